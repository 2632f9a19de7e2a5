"""External service connectors: Deriv market data and Telegram notifications."""
