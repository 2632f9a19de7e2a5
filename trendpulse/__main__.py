"""Entry point for running trendpulse module directly.

Usage:
    python -m trendpulse
"""

from trendpulse.main import run

if __name__ == "__main__":
    run()
