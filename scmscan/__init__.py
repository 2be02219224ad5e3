"""Scan-and-reconcile ingestion engine for Git hosting platforms."""

__version__ = "0.1.0"
