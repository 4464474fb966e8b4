"""HookRelay - subscription lifecycle and notification routing service."""

__version__ = "0.3.0"
