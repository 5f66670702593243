"""PostgreSQL backup and restore with local and S3-compatible storage."""

__version__ = "0.1.0"
