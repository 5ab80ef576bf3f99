"""
Error taxonomy shared by every gitopsplane component.

All errors are recoverable from the caller's point of view: the core never
retries on its own, and never swallows a failure it was asked to perform.
"""


class GitopsPlaneError(Exception):
    """Base exception for gitopsplane operations."""


class NotFoundError(GitopsPlaneError):
    """Raised when a row with the requested key does not exist."""

    def __init__(self, entity: str, key: object) -> None:
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class ConstraintViolationError(GitopsPlaneError):
    """Raised on a uniqueness, foreign-key or composite-key breach."""


class InvalidTransitionError(GitopsPlaneError):
    """Raised when a state change is not allowed from the row's current state."""

    def __init__(self, entity: str, key: object, current: str, target: str) -> None:
        self.entity = entity
        self.key = key
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition for {entity} {key}: {current} → {target}")


class WaitTimeoutError(GitopsPlaneError):
    """Raised when a bounded wait on an external condition expires."""


class StoreUnavailableError(GitopsPlaneError):
    """Raised when the underlying database cannot be reached."""
