"""Domain models for pull requests, suites, cases and executions."""
