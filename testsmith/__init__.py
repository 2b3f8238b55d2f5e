"""testsmith: test generation and execution for pull requests.

Turns a pull request's changed files into generated test suites through a
language-model provider, runs them under concurrency and timeout limits,
and aggregates the results for the pull request and a dashboard.
"""

__version__ = "0.1.0"
