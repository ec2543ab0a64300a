"""Exception types raised by the branchchat core.

Only structural and configuration problems are exceptions.  Malformed wire
frames are skipped and counted, and a cancelled stream is a normal terminal
outcome, so neither has a class here.
"""

from __future__ import annotations


class BranchChatError(Exception):
    """Base class for every error raised by this package."""


class NodeNotFound(BranchChatError, LookupError):
    """A node id was referenced that is not present in the conversation pool."""

    def __init__(self, node_id: str) -> None:
        super().__init__(f"Node not found: {node_id!r}")
        self.node_id = node_id


class UnknownProvider(BranchChatError, ValueError):
    """A ``"Provider: model"`` string does not match any configured provider."""

    def __init__(self, model: str, reason: str | None = None) -> None:
        detail = f"No provider found for model: {model!r}"
        if reason:
            detail = f"{detail} ({reason})"
        super().__init__(detail)
        self.model = model


class TransportError(BranchChatError):
    """Network or HTTP-level failure while talking to a completion endpoint."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
