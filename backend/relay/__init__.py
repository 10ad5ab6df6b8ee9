"""Real-time conversation relay for the trade-worker marketplace."""

__version__ = "0.1.0"
