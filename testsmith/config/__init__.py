"""Configuration system for testsmith.

This package provides type-safe configuration management using Pydantic,
including settings for test generation, the generation provider, rate
limits, execution, and storage.
"""
