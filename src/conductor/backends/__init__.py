from conductor.backends.base import (
    AgentBackend,
    AgentEvent,
    AgentResult,
    AgentRun,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from conductor.backends.claude import ClaudeCodeBackend
from conductor.backends.codex import CodexBackend
from conductor.backends.codex_sdk import CodexSDKBackend
from conductor.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "AgentEvent",
    "AgentResult",
    "AgentRun",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "CodexSDKBackend",
    "ResilientBackend",
    "RetryPolicy",
]
