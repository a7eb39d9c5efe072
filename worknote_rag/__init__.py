"""Work note embedding sync and similarity search service."""

__version__ = "0.1.0"
