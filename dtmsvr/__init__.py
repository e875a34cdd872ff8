"""Storage backends, configuration loading and topic management for a distributed transaction manager server."""

__version__ = "0.1.0"