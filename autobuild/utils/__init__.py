"""Shared helpers: subprocess execution, logging setup and retries."""
