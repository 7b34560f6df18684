"""IDE Sync: pairs two local editors and keeps their cursors in step."""

__version__ = "1.0.0"
