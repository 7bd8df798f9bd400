"""Attribute store, change notification and undo.

The store itself lives in :mod:`sheetcalc.engine.character` and the session
in :mod:`sheetcalc.engine.session`; both depend on :mod:`sheetcalc.traits`,
which in turn uses the leaf modules exported here.
"""

from .dice import Dice
from .fields import Encumbrance, FieldId
from .notifier import DirtyFlag, NotificationBatch, Notifier
from .rules import RuleSet
from .snapshot import CharacterSnapshot
from .undo import UndoEdit, UndoRecorder

__all__ = [
    "CharacterSnapshot",
    "Dice",
    "DirtyFlag",
    "Encumbrance",
    "FieldId",
    "NotificationBatch",
    "Notifier",
    "RuleSet",
    "UndoEdit",
    "UndoRecorder",
]
