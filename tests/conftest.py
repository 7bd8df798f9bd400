"""Shared fixtures for all tests."""

import pytest

from sheetcalc.config import Settings, get_settings
from sheetcalc.engine.character import Character
from sheetcalc.engine.rules import RuleSet

# Prefixes covering every notification a character emits.
ALL_PREFIXES = (
    "attr.",
    "hp.",
    "fp.",
    "lift.",
    "damage.",
    "points.",
    "carried.",
    "encumbrance.",
    "bonus.",
    "cost_reduction.",
    "trait.",
    "skill.",
    "spell.",
    "modified",
)


class NotificationRecorder:
    """Listener that records every notification it receives."""

    def __init__(self) -> None:
        self.events: list[tuple[str, object]] = []

    def __call__(self, producer: object, field_id: str, value: object) -> None:
        self.events.append((field_id, value))

    @property
    def ids(self) -> list[str]:
        return [field_id for field_id, _ in self.events]

    def values_for(self, field_id: str) -> list[object]:
        return [value for key, value in self.events if key == field_id]

    def clear(self) -> None:
        self.events.clear()

    def watch(self, character: Character) -> "NotificationRecorder":
        character.add_target(self, *ALL_PREFIXES)
        return self


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Keep cached settings from leaking between tests."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings():
    """Settings with defaults, ignoring any local .env file."""
    return Settings(_env_file=None, worker_idle_wait=0.05, worker_retry_backoff=0.01)


@pytest.fixture
def rules():
    """The default rule set."""
    return RuleSet()


@pytest.fixture
def character(rules):
    """A fresh 150-point character with all attributes at 10."""
    character = Character(rules, total_points=150)
    yield character
    character.dispose()


@pytest.fixture
def recorder():
    """A notification recorder, not yet attached."""
    return NotificationRecorder()
