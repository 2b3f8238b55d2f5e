"""Utility modules: logging setup, retries, and async subprocesses."""
