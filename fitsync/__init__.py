"""FitSync: fitness data synchronization service."""

__version__ = "0.1.0"
