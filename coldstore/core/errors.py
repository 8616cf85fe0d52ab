"""Error taxonomy shared by the lifecycle engine.

``ValidationError``
    Bad rule criteria, malformed requests or settings.  Raised before any
    state is mutated and surfaced to the caller (HTTP 422).

``TransientIOError``
    The source system, tiered store or notification channel is temporarily
    unavailable.  Retried with bounded back-off inside the component that
    owns the I/O; once retries are exhausted the operation is recorded as
    ``Failed`` (or the notification as ``delivered=False``).

``ConflictError``
    A compare-and-set status transition lost a race.  The engine treats the
    loser as a successful no-op; this exception is only raised by store
    helpers called with ``strict=True``.

``FatalConfigError``
    The request can never succeed as configured (e.g. an unsupported target
    tier).  The operation is marked ``Failed`` immediately with no retry.
"""

from __future__ import annotations


class ColdStoreError(Exception):
    """Base class for all engine errors."""


class ValidationError(ColdStoreError):
    """Raised when input is rejected before any state mutation."""


class NotFoundError(ColdStoreError):
    """Raised when a tenant-scoped record does not exist."""


class TransientIOError(ColdStoreError):
    """Raised when an external collaborator is temporarily unavailable."""


class ConflictError(ColdStoreError):
    """Raised when a status transition's expected state no longer holds.

    Attributes:
        operation_id: The operation whose transition lost the race.
        expected: The statuses the caller expected.
        target: The status the caller tried to apply.
    """

    def __init__(self, operation_id: str, expected: tuple[str, ...], target: str) -> None:
        super().__init__(
            f"Operation {operation_id} is not in {'/'.join(expected)}; "
            f"cannot move to {target}"
        )
        self.operation_id = operation_id
        self.expected = expected
        self.target = target


class FatalConfigError(ColdStoreError):
    """Raised when an operation can never succeed with the current configuration."""
