"""Session lifecycle commands built on the loop engine and state store."""

from gralph.sessions.controllers import (
    LogsCommand,
    ResumeCommand,
    SessionCliController,
    SessionCommandError,
    StartCommand,
    StopCommand,
    StoreProgressSink,
    resolve_loop,
    run_loop_args,
    sanitize_session_name,
    session_name,
)

__all__ = [
    "LogsCommand",
    "ResumeCommand",
    "SessionCliController",
    "SessionCommandError",
    "StartCommand",
    "StopCommand",
    "StoreProgressSink",
    "resolve_loop",
    "run_loop_args",
    "sanitize_session_name",
    "session_name",
]
