"""Convenience exports for coding-agent integrations."""

from .base import AgentError, AgentProvider, AgentRunOptions, RunningTask, run_to_completion
from .claude import ClaudeCodeProvider

__all__ = [
    "AgentError",
    "AgentProvider",
    "AgentRunOptions",
    "ClaudeCodeProvider",
    "RunningTask",
    "run_to_completion",
]
