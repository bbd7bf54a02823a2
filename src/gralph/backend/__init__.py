"""Coding-agent backend adapters."""

from gralph.backend.agents import (
    DEFAULT_BACKEND,
    SUPPORTED_BACKENDS,
    ClaudeBackend,
    CodexBackend,
    GeminiBackend,
    OpenCodeBackend,
    backend_from_name,
)
from gralph.backend.base import BackendAdapter, BackendError
from gralph.backend.cli_backend import CliAgentBackend

__all__ = [
    "DEFAULT_BACKEND",
    "SUPPORTED_BACKENDS",
    "BackendAdapter",
    "BackendError",
    "ClaudeBackend",
    "CliAgentBackend",
    "CodexBackend",
    "GeminiBackend",
    "OpenCodeBackend",
    "backend_from_name",
]
