"""Webhook notifications for loop outcomes (Discord, Slack or plain JSON)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
CLI_LABEL = "Gralph CLI"
DISCORD_GREEN = 5763719
DISCORD_RED = 15548997
SLACK_GREEN = "#57F287"
SLACK_RED = "#ED4245"


class NotifyError(RuntimeError):
    """Webhook could not be delivered."""


class WebhookType(str, Enum):
    DISCORD = "discord"
    SLACK = "slack"
    GENERIC = "generic"


class FailureReason(str, Enum):
    MAX_ITERATIONS = "max_iterations"
    ERROR = "error"
    MANUAL_STOP = "manual_stop"


@dataclass(slots=True)
class CompletionNotice:
    session_name: str
    project_dir: str | None = None
    iterations: int | None = None
    duration_secs: int | None = None


@dataclass(slots=True)
class FailureNotice:
    session_name: str
    reason: str
    project_dir: str | None = None
    iterations: int | None = None
    max_iterations: int | None = None
    remaining_tasks: int | None = None
    duration_secs: int | None = None


def detect_webhook_type(url: str) -> WebhookType:
    lowered = url.lower()
    if "discord.com/api/webhooks" in lowered or "discordapp.com/api/webhooks" in lowered:
        return WebhookType.DISCORD
    if "hooks.slack.com" in lowered:
        return WebhookType.SLACK
    return WebhookType.GENERIC


def format_duration(duration_secs: int | None) -> str:
    if duration_secs is None:
        return "unknown"
    hours, rest = divmod(duration_secs, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def build_complete_payload(
    notice: CompletionNotice,
    webhook_type: WebhookType,
    *,
    timestamp: str | None = None,
) -> dict[str, Any]:
    timestamp = timestamp or _timestamp()
    project = notice.project_dir or "unknown"
    iterations = _or_unknown(notice.iterations)
    duration = format_duration(notice.duration_secs)

    if webhook_type is WebhookType.DISCORD:
        return {
            "embeds": [
                _discord_embed(
                    title="✅ Gralph Complete",
                    description=_complete_description(notice.session_name, "**"),
                    color=DISCORD_GREEN,
                    fields=[
                        _discord_field("Project", f"`{project}`", inline=False),
                        _discord_field("Iterations", iterations),
                        _discord_field("Duration", duration),
                    ],
                    timestamp=timestamp,
                ),
            ],
        }
    if webhook_type is WebhookType.SLACK:
        return _slack_payload(
            color=SLACK_GREEN,
            header="✅ Gralph Complete",
            description=_complete_description(notice.session_name, "*"),
            fields=[
                ("Project", f"`{project}`"),
                ("Iterations", iterations),
                ("Duration", duration),
            ],
            timestamp=timestamp,
        )
    return {
        "event": "complete",
        "status": "success",
        "session": notice.session_name,
        "project": project,
        "iterations": iterations,
        "duration": duration,
        "timestamp": timestamp,
        "message": (
            f"Gralph loop '{notice.session_name}' completed successfully "
            f"after {iterations} iterations ({duration})"
        ),
    }


def build_failed_payload(
    notice: FailureNotice,
    webhook_type: WebhookType,
    *,
    timestamp: str | None = None,
) -> dict[str, Any]:
    timestamp = timestamp or _timestamp()
    project = notice.project_dir or "unknown"
    iterations = _or_unknown(notice.iterations)
    max_iterations = _or_unknown(notice.max_iterations)
    remaining = _or_unknown(notice.remaining_tasks)
    duration = format_duration(notice.duration_secs)

    if webhook_type is WebhookType.DISCORD:
        return {
            "embeds": [
                _discord_embed(
                    title="❌ Gralph Failed",
                    description=_failure_description(notice.session_name, notice.reason, "**"),
                    color=DISCORD_RED,
                    fields=[
                        _discord_field("Project", f"`{project}`", inline=False),
                        _discord_field("Reason", notice.reason),
                        _discord_field("Iterations", f"{iterations}/{max_iterations}"),
                        _discord_field("Remaining Tasks", remaining),
                        _discord_field("Duration", duration),
                    ],
                    timestamp=timestamp,
                ),
            ],
        }
    if webhook_type is WebhookType.SLACK:
        return _slack_payload(
            color=SLACK_RED,
            header="❌ Gralph Failed",
            description=_failure_description(notice.session_name, notice.reason, "*"),
            fields=[
                ("Project", f"`{project}`"),
                ("Reason", notice.reason),
                ("Iterations", f"{iterations}/{max_iterations}"),
                ("Remaining Tasks", remaining),
                ("Duration", duration),
            ],
            timestamp=timestamp,
        )

    name = notice.session_name
    if notice.reason == FailureReason.MAX_ITERATIONS.value:
        message = (
            f"Gralph loop '{name}' failed: hit max iterations "
            f"({iterations}/{max_iterations}) with {remaining} tasks remaining"
        )
    elif notice.reason == FailureReason.ERROR.value:
        message = f"Gralph loop '{name}' failed due to an error after {iterations} iterations"
    elif notice.reason == FailureReason.MANUAL_STOP.value:
        message = (
            f"Gralph loop '{name}' was manually stopped after {iterations} iterations "
            f"with {remaining} tasks remaining"
        )
    else:
        message = f"Gralph loop '{name}' failed: {notice.reason} after {iterations} iterations"
    return {
        "event": "failed",
        "status": "failure",
        "session": name,
        "project": project,
        "reason": notice.reason,
        "iterations": iterations,
        "max_iterations": max_iterations,
        "remaining_tasks": remaining,
        "duration": duration,
        "timestamp": timestamp,
        "message": message,
    }


class WebhookNotifier:
    """Posts outcome payloads to a webhook URL."""

    def __init__(
        self,
        webhook_url: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not webhook_url.strip():
            raise NotifyError("webhook url is required")
        self.webhook_url = webhook_url
        self.webhook_type = detect_webhook_type(webhook_url)
        effective_timeout = timeout_seconds if timeout_seconds > 0 else DEFAULT_TIMEOUT_SECONDS
        self._timeout = httpx.Timeout(effective_timeout)
        self._transport = transport

    def notify_complete(self, notice: CompletionNotice) -> None:
        _require_session(notice.session_name)
        self.send(build_complete_payload(notice, self.webhook_type))

    def notify_failed(self, notice: FailureNotice) -> None:
        _require_session(notice.session_name)
        self.send(build_failed_payload(notice, self.webhook_type))

    def send(self, payload: dict[str, Any]) -> None:
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(self.webhook_url, json=payload)
        except httpx.HTTPError as error:
            raise NotifyError(f"http error: {error}") from error
        if not response.is_success:
            raise NotifyError(f"webhook returned HTTP {response.status_code}")
        logger.info("Delivered %s webhook notification", self.webhook_type.value)


def _require_session(session_name: str) -> None:
    if not session_name.strip():
        raise NotifyError("session name is required")


def _complete_description(session_name: str, marker: str) -> str:
    return f"Session {marker}{session_name}{marker} has finished all tasks successfully."


def _failure_description(session_name: str, reason: str, marker: str) -> str:
    emphasized = f"{marker}{session_name}{marker}"
    if reason == FailureReason.MAX_ITERATIONS.value:
        return f"Session {emphasized} hit maximum iterations limit."
    if reason == FailureReason.ERROR.value:
        return f"Session {emphasized} encountered an error."
    if reason == FailureReason.MANUAL_STOP.value:
        return f"Session {emphasized} was manually stopped."
    return f"Session {emphasized} failed: {reason}"


def _discord_field(name: str, value: str, *, inline: bool = True) -> dict[str, Any]:
    return {"name": name, "value": value, "inline": inline}


def _discord_embed(
    *,
    title: str,
    description: str,
    color: int,
    fields: list[dict[str, Any]],
    timestamp: str,
) -> dict[str, Any]:
    return {
        "title": title,
        "description": description,
        "color": color,
        "fields": fields,
        "footer": {"text": CLI_LABEL},
        "timestamp": timestamp,
    }


def _slack_payload(
    *,
    color: str,
    header: str,
    description: str,
    fields: list[tuple[str, str]],
    timestamp: str,
) -> dict[str, Any]:
    blocks = [
        {"type": "header", "text": {"type": "plain_text", "text": header, "emoji": True}},
        {"type": "section", "text": {"type": "mrkdwn", "text": description}},
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*{label}:*\n{value}"} for label, value in fields
            ],
        },
        {
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": f"{CLI_LABEL} • {timestamp}"}],
        },
    ]
    return {"attachments": [{"color": color, "blocks": blocks}]}


def _or_unknown(value: int | None) -> str:
    return "unknown" if value is None else str(value)


def _timestamp() -> str:
    return datetime.now().astimezone().isoformat()
