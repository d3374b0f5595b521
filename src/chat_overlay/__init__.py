"""Multi-platform live chat aggregator and OBS alert overlay engine."""

__version__ = "0.1.0"
