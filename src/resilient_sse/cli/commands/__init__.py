"""CLI commands for resilient-sse.

This package contains all command implementations for the CLI.
"""
