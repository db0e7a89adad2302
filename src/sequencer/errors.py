"""Sequencer error hierarchy.

Every failure the sequencer can observe is classified into one of these
types. Classification drives control flow:

  CycleDetected / InvalidDescriptor  -> fatal before any external call
  TransientError                     -> retried with backoff
  PermanentError / ReadinessTimeout  -> entry marked Failed, no retry
  LedgerCorruption                   -> fatal, operator must intervene
  PlacementMismatch                  -> fatal before any external call

``ResourceNotFound`` and ``ResourceAlreadyExists`` are provider signals
rather than failures: delete-of-absent and create-of-existing are both
treated as success by the callers.
"""

from __future__ import annotations

from typing import Any, Iterable


class SequencerError(Exception):
    """Base class for all sequencer errors."""


class CycleDetected(SequencerError):
    """The dependency graph contains at least one cycle."""

    def __init__(self, resource_ids: Iterable[str]) -> None:
        self.resource_ids = tuple(sorted(resource_ids))
        super().__init__(
            'dependency cycle among: ' + ', '.join(self.resource_ids)
        )


class InvalidDescriptor(SequencerError):
    """A descriptor set is structurally invalid (duplicate or unknown ids)."""


class ProviderError(SequencerError):
    """Error raised by an external control-plane client."""

    def __init__(
        self,
        message: str,
        *,
        resource_id: str | None = None,
        status_code: int | None = None,
        payload: Any = None,
    ) -> None:
        self.message = message
        self.resource_id = resource_id
        self.status_code = status_code
        self.payload = payload
        super().__init__(message)


class TransientError(ProviderError):
    """Rate limiting, timeouts and 5xx-equivalent responses."""

    def __init__(
        self,
        message: str,
        *,
        retry_after: float | None = None,
        **kwargs: Any,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, **kwargs)


class PermanentError(ProviderError):
    """Invalid spec, quota exceeded, permission denied."""


class ReadinessTimeout(PermanentError):
    """A resource never reached Ready within its kind's timeout."""

    def __init__(self, resource_id: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f'{resource_id!r} not ready after {timeout_seconds:.0f}s',
            resource_id=resource_id,
        )


class ResourceNotFound(ProviderError):
    """The external resource does not exist."""


class ResourceAlreadyExists(ProviderError):
    """A create call hit an existing resource with the same identity."""


class LedgerCorruption(SequencerError):
    """The persisted ledger could not be read or failed validation."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f'ledger {path!r} is unreadable: {reason}')


class PlacementMismatch(SequencerError):
    """The ledger's resources live in a different project or region."""

    def __init__(self, recorded: dict[str, str], requested: dict[str, str]) -> None:
        self.recorded = recorded
        self.requested = requested
        diff = ', '.join(
            f'{key} {recorded[key]!r} (requested {requested.get(key, "")!r})'
            for key in sorted(recorded)
            if requested.get(key, '') != recorded[key]
        )
        super().__init__(
            f'ledger resources were created in {diff}; destroy them first '
            'or use a separate ledger'
        )
