"""Version information for pluginfed."""

__version__ = "0.1.0"
