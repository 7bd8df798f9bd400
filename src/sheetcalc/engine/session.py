"""Session lifecycle for an open character."""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

import structlog

from sheetcalc.config import Settings, get_settings
from sheetcalc.engine.character import Character
from sheetcalc.engine.fields import TRAIT_PREFIX
from sheetcalc.engine.snapshot import CharacterSnapshot
from sheetcalc.traits.aggregator import FeatureAggregator

logger = structlog.get_logger(__name__)


class CharacterSession:
    """
    An open character with its background feature aggregator.

    The session starts the aggregator and asks it to rescan whenever the
    character's trait structure changes.
    """

    def __init__(self, character: Character, settings: Settings | None = None) -> None:
        """
        Open a session on a character.

        Args:
            character: The character to manage
            settings: Worker timing settings; the cached settings if omitted
        """
        self._settings = settings or get_settings()
        self.id: UUID = uuid4()
        self.character = character
        self.created_at = datetime.now(UTC)
        self.aggregator = FeatureAggregator(
            character,
            idle_wait=self._settings.worker_idle_wait,
            retry_backoff=self._settings.worker_retry_backoff,
        )
        self._disposed = False

        character.add_target(self._on_trait_changed, TRAIT_PREFIX)
        self.aggregator.start()
        self.aggregator.mark_for_update()

        logger.info("character_session_opened", session_id=str(self.id))

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def _on_trait_changed(self, producer: Any, field_id: str, value: Any) -> None:
        self.aggregator.mark_for_update()

    def wait_for_processing_to_finish(self, timeout: float | None = None) -> bool:
        """
        Wait for pending feature updates to be installed.

        Args:
            timeout: Seconds to wait; the configured default if omitted

        Returns:
            True if the aggregator settled before the timeout

        Raises:
            RuntimeError: If called with a batch open on this thread, since the
                aggregator cannot install features until the batch closes
        """
        if self.character.holds_open_batch():
            raise RuntimeError("Cannot wait for feature processing inside a notification batch")
        if timeout is None:
            timeout = self._settings.worker_finish_timeout
        return self.aggregator.wait_for_processing_to_finish(timeout)

    def snapshot(self) -> CharacterSnapshot:
        """Take a snapshot once pending feature updates are installed."""
        if not self.wait_for_processing_to_finish():
            logger.warning("snapshot_before_features_settled", session_id=str(self.id))
        return self.character.to_snapshot()

    def dispose(self) -> None:
        """Stop the aggregator and detach all listeners. Safe to call more than once."""
        if self._disposed:
            return
        self._disposed = True
        self.aggregator.dispose()
        self.character.dispose()
        logger.info(
            "character_session_closed",
            session_id=str(self.id),
            scans=self.aggregator.scan_count,
        )

    def __enter__(self) -> "CharacterSession":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.dispose()

    def __repr__(self) -> str:
        return f"CharacterSession(id={self.id}, disposed={self._disposed})"
