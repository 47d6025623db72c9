"""Sandbox package – ephemeral Docker containers for running test suites."""

from selfheal.sandbox.executor import ExecutionResult, SandboxExecutor

__all__ = ["ExecutionResult", "SandboxExecutor"]
