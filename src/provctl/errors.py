"""Error taxonomy for provctl.

Every error that concerns a managed resource carries the offending
``ResourceID`` and the underlying cause so that user-visible failures
always name both.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from provctl.models import ActionType, ResourceID


class ProvctlError(Exception):
    """Base class for all provctl errors."""

    def __init__(
        self,
        message: str,
        resource: ResourceID | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.message = message
        self.resource = resource
        self.cause = cause
        super().__init__(self._render())

    def _render(self) -> str:
        text = self.message
        if self.resource is not None:
            text = f"{text} [{self.resource}]"
        if self.cause is not None:
            text = f"{text}: {self.cause}"
        return text


class ConfigError(ProvctlError):
    """Raised when a config or desired-state file is invalid."""


class ProviderNotFoundError(ProvctlError):
    """Raised when an action names a provider that is not registered."""

    def __init__(self, provider: str, resource: ResourceID | None = None) -> None:
        self.provider = provider
        super().__init__(f"Provider not found: {provider!r}", resource=resource)


class ApplyError(ProvctlError):
    """Raised when a provider call fails while applying a plan."""

    def __init__(
        self,
        message: str,
        resource: ResourceID | None = None,
        cause: BaseException | None = None,
        action: ActionType | None = None,
    ) -> None:
        self.action = action
        super().__init__(message, resource=resource, cause=cause)


class TransactionError(ProvctlError):
    """Raised when a state transaction cannot be committed."""


class StateLockError(ProvctlError):
    """Raised when the advisory state lock cannot be acquired."""


class SerializationError(ProvctlError):
    """Raised when state, events or snapshots cannot be read or written."""


class SnapshotError(ProvctlError):
    """Raised for snapshot manager failures."""


class SnapshotNotFoundError(SnapshotError):
    """Raised when a snapshot id does not exist on disk."""


class IntegrityError(SnapshotError):
    """Raised when a snapshot's checksum does not match its content."""


class RemediationError(ProvctlError):
    """Raised when a single drift item cannot be remediated."""
