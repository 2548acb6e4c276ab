"""tidesync: offline mutation queue and delta sync engine."""

__version__ = "0.1.0"
