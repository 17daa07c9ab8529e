"""GitHub engineering-activity ingestion and metrics core."""

__version__ = "1.0.0"
