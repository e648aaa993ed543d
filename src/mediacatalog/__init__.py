"""Background scan orchestration for the media catalogue."""

__version__ = "0.1.0"
