"""Background feature aggregation.

The aggregator scans a character's trait containers on its own thread,
builds a fresh :class:`~sheetcalc.traits.features.FeatureMap` and installs it
with ``Character.set_feature_map``. A scan that finds the traits changed
under it throws its partial map away and starts over.
"""

import threading
from collections.abc import Callable, Iterable
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

from sheetcalc.traits.features import Bonus, Feature, FeatureMap
from sheetcalc.traits.models import Advantage, Equipment, TraitLists

if TYPE_CHECKING:
    from sheetcalc.engine.character import Character

logger = structlog.get_logger(__name__)

# Scan stages, in order. The stale flag is checked after each one.
SCAN_STAGES = ("advantages", "skills", "spells", "equipment")


class AggregatorState(StrEnum):
    """Worker states."""

    IDLE = "idle"
    SCANNING = "scanning"
    APPLYING = "applying"
    ABORTED = "aborted"


class ScanAborted(Exception):
    """Raised at a stage boundary when the scan has gone stale."""


def _scaled(features: Iterable[Feature], level: int) -> Iterable[Feature]:
    for feature in features:
        if isinstance(feature, Bonus):
            yield feature.with_level(level)
        else:
            yield feature


def _advantage_features(advantage: Advantage) -> list[Feature]:
    features: list[Feature] = []
    if not advantage.enabled:
        return features
    features.extend(_scaled(tuple(advantage.features), advantage.levels))
    for modifier in tuple(advantage.modifiers):
        if modifier.enabled:
            features.extend(_scaled(tuple(modifier.features), modifier.levels))
    for child in tuple(advantage.children):
        features.extend(_advantage_features(child))
    return features


def _equipment_features(item: Equipment) -> list[Feature]:
    features: list[Feature] = []
    if not item.contributes_features:
        return features
    features.extend(_scaled(tuple(item.features), 0))
    for modifier in tuple(item.modifiers):
        if modifier.enabled:
            features.extend(_scaled(tuple(modifier.features), 0))
    return features


def build_feature_map(
    traits: TraitLists,
    checkpoint: Callable[[str], None] | None = None,
) -> FeatureMap:
    """Collect the features of every active trait into a new map.

    Bonuses are scaled by the level of the advantage or modifier that carries
    them. Equipment contributes only when equipped with a positive quantity,
    together with its enabled modifiers.

    Args:
        traits: Trait containers to scan
        checkpoint: Called with each stage name after the stage completes;
            may raise to cancel the scan

    Returns:
        The new feature map
    """
    features: list[Feature] = []

    for advantage in tuple(traits.advantages):
        features.extend(_advantage_features(advantage))
    if checkpoint is not None:
        checkpoint("advantages")

    for skill in tuple(traits.skills):
        features.extend(skill.features)
    if checkpoint is not None:
        checkpoint("skills")

    for spell in tuple(traits.spells):
        features.extend(spell.features)
    if checkpoint is not None:
        checkpoint("spells")

    for item in tuple(traits.carried_equipment):
        features.extend(_equipment_features(item))
    if checkpoint is not None:
        checkpoint("equipment")

    return FeatureMap.from_features(features)


class FeatureAggregator:
    """Worker thread that keeps a character's feature map current.

    Args:
        character: Character to scan and install into
        idle_wait: Seconds between wakeups while idle
        retry_backoff: Seconds to wait before retrying a failed scan
        on_stage: Optional hook called with each completed stage name
            before the stale check
    """

    def __init__(
        self,
        character: "Character",
        *,
        idle_wait: float = 0.5,
        retry_backoff: float = 0.1,
        on_stage: Callable[[str], None] | None = None,
    ) -> None:
        self.character = character
        self.idle_wait = idle_wait
        self.retry_backoff = retry_backoff
        self._on_stage = on_stage
        self._cond = threading.Condition()
        self._state = AggregatorState.IDLE
        self._pending = False
        self._stale = False
        self._disposed = False
        self._thread: threading.Thread | None = None

        # Counters for diagnostics
        self.scan_count = 0
        self.abort_count = 0
        self.failure_count = 0
        self.install_count = 0

    @property
    def state(self) -> AggregatorState:
        with self._cond:
            return self._state

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the worker thread. Does nothing if already started."""
        with self._cond:
            if self._disposed:
                raise RuntimeError("FeatureAggregator has been disposed")
            if self._thread is not None:
                return
            self._thread = threading.Thread(target=self._run, name="feature-aggregator", daemon=True)
        self._thread.start()
        logger.debug("feature_aggregator_started")

    def mark_for_update(self) -> None:
        """Request a rescan. Marks during a scan make it restart once."""
        with self._cond:
            self._pending = True
            if self._state is AggregatorState.SCANNING:
                self._stale = True
            self._cond.notify_all()

    def wait_for_processing_to_finish(self, timeout: float | None = None) -> bool:
        """Block until the worker is idle with nothing pending.

        Returns:
            True if the worker settled (or was disposed), False on timeout
        """
        with self._cond:
            return self._cond.wait_for(
                lambda: self._disposed or (self._state is AggregatorState.IDLE and not self._pending),
                timeout,
            )

    def dispose(self) -> None:
        """Stop the worker and wait for it to exit. Safe to call more than once."""
        with self._cond:
            if self._disposed:
                return
            self._disposed = True
            self._stale = True
            self._cond.notify_all()
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(self.idle_wait, self.retry_backoff) + 5.0)
        logger.debug("feature_aggregator_disposed", scans=self.scan_count, aborts=self.abort_count)

    def _checkpoint(self, stage: str) -> None:
        if self._on_stage is not None:
            self._on_stage(stage)
        with self._cond:
            if self._stale or self._disposed:
                raise ScanAborted(stage)

    def _set_state(self, state: AggregatorState) -> None:
        with self._cond:
            self._state = state
            self._cond.notify_all()

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._pending and not self._disposed:
                    self._cond.wait(self.idle_wait)
                if self._disposed:
                    self._state = AggregatorState.IDLE
                    self._cond.notify_all()
                    return
                self._pending = False
                self._stale = False
                self._state = AggregatorState.SCANNING
                self.scan_count += 1

            try:
                feature_map = build_feature_map(self.character.traits, self._checkpoint)
                with self._cond:
                    if self._stale or self._disposed:
                        raise ScanAborted("install")
                    self._state = AggregatorState.APPLYING
                self.character.set_feature_map(feature_map)
                self.install_count += 1
                self._set_state(AggregatorState.IDLE)
                logger.debug("feature_map_applied", feature_keys=len(feature_map))
            except ScanAborted as e:
                with self._cond:
                    self.abort_count += 1
                    self._state = AggregatorState.ABORTED
                    self._pending = True
                    self._cond.notify_all()
                logger.debug("feature_scan_aborted", stage=str(e))
            except Exception:
                logger.error("feature_scan_failed", exc_info=True)
                with self._cond:
                    self.failure_count += 1
                    self._state = AggregatorState.IDLE
                    self._pending = True
                    self._cond.notify_all()
                    self._cond.wait_for(lambda: self._disposed, self.retry_backoff)
