"""Classification history relay."""

__version__ = "1.0.0"
