"""Self-healing repository agent: scan, patch, test, push, open a PR."""

__version__ = "0.1.0"
