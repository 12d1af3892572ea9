"""Error taxonomy shared by the queue and synthesis layers."""

from __future__ import annotations


class QueueError(RuntimeError):
    """Base class for queue-level failures surfaced to callers."""


class QueueValidationError(QueueError, ValueError):
    """Malformed caller input, rejected before any mutation."""


class ItemNotFoundError(QueueError):
    """Referenced queue item does not exist."""

    def __init__(self, item_id: str) -> None:
        super().__init__(f"Queue item not found: {item_id}")
        self.item_id = item_id


class NotSelectableError(QueueError):
    """Item was not pending/unexpired when a selection tried to reserve it."""

    def __init__(self, item_id: str, reason: str) -> None:
        super().__init__(f"Item {item_id} is not selectable: {reason}")
        self.item_id = item_id
        self.reason = reason


class PersistenceFailure(QueueError):
    """Storage error; no state change may be assumed to have happened."""


class ExternalCallFailure(RuntimeError):
    """Planner or section-writer call failed or returned unusable output."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage} call failed: {message}")
        self.stage = stage
