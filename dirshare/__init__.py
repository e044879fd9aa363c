"""Local HTTP server for browsing, downloading and uploading a directory tree."""

__version__ = "1.0.0"
