"""gralph: drive a coding-agent CLI against a task checklist until it is done."""

__version__ = "0.4.0"
