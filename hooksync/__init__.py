"""hooksync: replicate webhook rows into external databases and HTTPS endpoints."""

__version__ = "0.1.0"
