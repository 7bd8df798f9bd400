"""Undo history for character field edits."""

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class UndoEdit:
    """One reversible field edit."""

    field_id: str
    label: str
    before: Any
    after: Any


class UndoRecorder:
    """Bounded undo/redo stacks replayed through a field setter.

    Args:
        apply: Setter used to replay an edit, called as ``apply(field_id, value)``
        limit: Maximum number of edits kept; the oldest are dropped first
    """

    def __init__(self, apply: Callable[[str, Any], None], limit: int = 100) -> None:
        self._apply = apply
        self._undo: deque[UndoEdit] = deque(maxlen=limit)
        self._redo: list[UndoEdit] = []
        self._replaying = False

    @property
    def replaying(self) -> bool:
        """True while an undo or redo is being applied."""
        return self._replaying

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    @property
    def edits(self) -> tuple[UndoEdit, ...]:
        """Recorded edits, oldest first."""
        return tuple(self._undo)

    def post(self, label: str, field_id: str, before: Any, after: Any) -> UndoEdit | None:
        """Record an edit.

        Nothing is recorded while replaying, or when ``before == after``.

        Returns:
            The recorded edit, or None if it was suppressed
        """
        if self._replaying or before == after:
            return None
        edit = UndoEdit(str(field_id), label, before, after)
        self._undo.append(edit)
        self._redo.clear()
        return edit

    def undo(self) -> UndoEdit | None:
        """Revert the most recent edit."""
        if not self._undo:
            return None
        edit = self._undo.pop()
        self._replay(edit.field_id, edit.before)
        self._redo.append(edit)
        logger.debug("undo_applied", field_id=edit.field_id, label=edit.label)
        return edit

    def redo(self) -> UndoEdit | None:
        """Re-apply the most recently undone edit."""
        if not self._redo:
            return None
        edit = self._redo.pop()
        self._replay(edit.field_id, edit.after)
        self._undo.append(edit)
        logger.debug("redo_applied", field_id=edit.field_id, label=edit.label)
        return edit

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()

    def _replay(self, field_id: str, value: Any) -> None:
        self._replaying = True
        try:
            self._apply(field_id, value)
        finally:
            self._replaying = False
