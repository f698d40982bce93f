"""Command-line interface for resilient-sse."""
