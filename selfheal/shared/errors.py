"""Error taxonomy for the healing pipeline.

Only failures that make forward progress meaningless are raised across
component boundaries. Expected degradations (nothing found, no diff, PR or
ledger failures) are returned as data instead.
"""

from __future__ import annotations


class HealingError(Exception):
    """Base class for all pipeline errors."""


class InvalidInputError(HealingError, ValueError):
    """Raised for malformed caller input; fatal before any workspace exists."""


class InvalidUrlError(InvalidInputError):
    """Raised when a repository URL does not match a recognised host pattern."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Invalid GitHub URL: {url}")


class RepositoryError(HealingError):
    """Raised when a git subprocess or GitHub API call fails."""

    def __init__(self, cmd: list[str], code: int, stderr: str):
        self.cmd = cmd
        self.code = code
        self.stderr = stderr
        super().__init__(f"{' '.join(cmd)} failed (exit {code}): {stderr}")


class InferenceError(HealingError):
    """Raised by the inference client when a completion cannot be obtained."""
