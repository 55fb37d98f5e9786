from __future__ import annotations

from typing import Any


class PlaceBlocksError(Exception):
    """Base error for the block pipeline."""


class ConfigurationError(PlaceBlocksError):
    """Raised when a component is built without the settings it requires."""


class ValidationError(PlaceBlocksError):
    """Raised when a crawl job request is rejected before it is enqueued."""

    def __init__(self, message: str, *, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class PayloadSchemaError(PlaceBlocksError):
    """Raised when a stored or fetched payload does not match a known schema version."""


class StoreUnavailableError(PlaceBlocksError):
    """Raised when the backing store is unavailable or not configured."""


class NotFoundError(PlaceBlocksError):
    """Raised when the requested entity does not exist."""


class BlockNotFoundError(NotFoundError):
    pass


class JobNotFoundError(NotFoundError):
    pass


class DuplicateKeyError(PlaceBlocksError):
    """Raised when a create collides with a live block that has the same dedupe hash."""

    def __init__(self, dedupe_hash: str, existing_id: str | None = None) -> None:
        super().__init__(f"duplicate dedupe_hash {dedupe_hash}")
        self.dedupe_hash = dedupe_hash
        self.existing_id = existing_id


class ConcurrentUpdateError(PlaceBlocksError):
    """Raised when an optimistic version check fails."""


class TransientNetworkError(PlaceBlocksError):
    """Raised for network failures that the job retry policy should absorb."""


class InvalidTransitionError(PlaceBlocksError):
    """Raised when a job or block state change is not allowed from the current state."""

    def __init__(self, entity_id: str, current: str, target: str) -> None:
        super().__init__(f"{entity_id} cannot move from {current} to {target}")
        self.entity_id = entity_id
        self.current = current
        self.target = target


class MigrationValidationMismatch(PlaceBlocksError):
    """Raised (or recorded) when the destination count differs from the migrated count."""

    def __init__(self, kind: str, expected: int, actual: int) -> None:
        super().__init__(f"{kind}: expected {expected} migrated rows, destination reports {actual}")
        self.kind = kind
        self.expected = expected
        self.actual = actual


class MigrationError(PlaceBlocksError):
    """Raised by migration targets when a batch cannot be written."""
