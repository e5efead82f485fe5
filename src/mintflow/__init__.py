# src/mintflow/__init__.py
"""Upload-and-mint pipeline: content-addressed uploads, mint transactions, resumable deployments."""

__version__ = "0.1.0"
