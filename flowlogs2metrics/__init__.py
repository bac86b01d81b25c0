"""Flow-log pipeline stages: ingest, transform, aggregate and write network flow records."""

__version__ = "0.1.0"