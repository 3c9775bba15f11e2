"""Domain exceptions shared by the API, the MCP server and the services."""
from __future__ import annotations


class BlueprintError(Exception):
    """Base class for expected, user-facing failures."""


class NotFoundError(BlueprintError):
    """Entity missing or not visible to the requesting user."""


class ValidationError(BlueprintError):
    """Input rejected before any side effect."""


class AlreadyDecidedError(BlueprintError):
    """A review delta has already left the pending state."""

    def __init__(self, delta_id: int, status: str):
        super().__init__(f"Delta {delta_id} was already decided ({status})")
        self.delta_id = delta_id
        self.status = status


class EncryptionKeyMissingError(BlueprintError):
    """BLUEPRINT_ENCRYPTION_KEY is unset or malformed."""


class LLMCallError(BlueprintError):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable
