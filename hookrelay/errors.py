"""Error taxonomy shared across HookRelay components."""

from typing import Any


class HookRelayError(Exception):
    """Base class for all HookRelay errors."""


class ValidationError(HookRelayError):
    """Malformed input. Rejects the whole request before any dispatch."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class UpstreamError(HookRelayError):
    """A collaborator call (Graph, queue, tracking store) failed or timed out."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        detail: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.message} (status {self.status_code})"
        return self.message


class SoftFailure(HookRelayError):
    """Per-item outcome that skips the item without failing the batch."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
