"""Change notification with nested batching.

Listeners receive every notification immediately. Only the expensive
aggregate recomputation is deferred: setters mark dirty flags on the open
batch, and the flush callback runs once when the outermost batch closes.
"""

from collections.abc import Callable
from dataclasses import dataclass
from enum import Flag, auto
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

Listener = Callable[[Any, str, Any], None]


class DirtyFlag(Flag):
    """Cached aggregates that need recomputing when a batch closes."""

    NONE = 0
    ATTRIBUTE_POINTS = auto()
    ADVANTAGE_POINTS = auto()
    SKILL_POINTS = auto()
    SPELL_POINTS = auto()
    EQUIPMENT = auto()
    ALL = ATTRIBUTE_POINTS | ADVANTAGE_POINTS | SKILL_POINTS | SPELL_POINTS | EQUIPMENT


@dataclass
class NotificationBatch:
    """State for one outermost transaction."""

    dirty: DirtyFlag = DirtyFlag.NONE
    modified: bool = False


def key_matches(key: str, notification_id: str) -> bool:
    """Check whether a registered key selects a notification id.

    A key matches its exact id, and a key ending in ``.`` matches every id
    under that prefix.

    Examples:
        >>> key_matches("attr.st", "attr.st")
        True
        >>> key_matches("attr.", "attr.st")
        True
        >>> key_matches("attr.st", "attr.st.lifting")
        False
    """
    if key == notification_id:
        return True
    return key.endswith(".") and notification_id.startswith(key)


class Notifier:
    """Publish/subscribe hub with a transaction depth counter.

    Args:
        producer: Object passed to listeners as the notification source
        flush: Called at the end of the outermost batch with the dirty flags
            set during it. Runs while the batch is still open, so anything it
            notifies counts toward the same transaction; if it marks new
            flags it is called again.
        touch: Called once at the end of the outermost batch when any
            notification was delivered during it
    """

    def __init__(
        self,
        producer: Any,
        flush: Callable[[DirtyFlag], None] | None = None,
        touch: Callable[[], None] | None = None,
    ) -> None:
        self._producer = producer
        self._flush = flush
        self._touch = touch
        self._targets: dict[Listener, tuple[str, ...]] = {}
        self._depth = 0
        self._batch: NotificationBatch | None = None

    @property
    def depth(self) -> int:
        """Current nesting depth; 0 outside any batch."""
        return self._depth

    @property
    def batch(self) -> NotificationBatch | None:
        """The open batch, or None outside any batch."""
        return self._batch

    def add_target(self, listener: Listener, *keys: str) -> None:
        """Register a listener for one or more ids or dot-terminated prefixes.

        Registering the same listener again adds to its keys.
        """
        existing = self._targets.get(listener, ())
        added = tuple(str(key) for key in keys if str(key) not in existing)
        self._targets[listener] = existing + added

    def remove_target(self, listener: Listener) -> None:
        """Detach a listener from every key."""
        self._targets.pop(listener, None)

    def reset(self) -> None:
        """Detach every listener."""
        self._targets.clear()

    @property
    def target_count(self) -> int:
        return len(self._targets)

    def start_notify(self) -> None:
        """Open a (possibly nested) batch."""
        self._depth += 1
        if self._depth == 1:
            self._batch = NotificationBatch()

    def end_notify(self) -> None:
        """Close a batch, flushing deferred work when leaving the outermost one."""
        if self._depth == 0:
            logger.warning("end_notify_without_start")
            return
        if self._depth == 1:
            batch = self._batch
            try:
                if batch is not None:
                    while batch.dirty and self._flush is not None:
                        dirty = batch.dirty
                        batch.dirty = DirtyFlag.NONE
                        self._flush(dirty)
                    if batch.modified and self._touch is not None:
                        self._touch()
            finally:
                self._batch = None
                self._depth = 0
            return
        self._depth -= 1

    def mark_dirty(self, flags: DirtyFlag) -> None:
        """Mark aggregates for recomputation when the batch closes."""
        if self._batch is None:
            raise RuntimeError("mark_dirty called outside a notification batch")
        self._batch.dirty |= flags

    def notify(self, notification_id: str, value: Any) -> None:
        """Deliver a notification to every matching listener right away."""
        notification_id = str(notification_id)
        if self._batch is not None:
            self._batch.modified = True
        for listener, keys in list(self._targets.items()):
            if any(key_matches(key, notification_id) for key in keys):
                listener(self._producer, notification_id, value)

    def notify_single(self, notification_id: str, value: Any) -> None:
        """Deliver one notification inside its own batch."""
        self.start_notify()
        try:
            self.notify(notification_id, value)
        finally:
            self.end_notify()
