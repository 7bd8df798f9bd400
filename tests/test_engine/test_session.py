"""Tests for character sessions."""

import threading

import pytest

from sheetcalc.engine.session import CharacterSession
from sheetcalc.traits.features import Bonus, LeveledAmount
from sheetcalc.traits.models import Advantage, Equipment


def strong(amount=2):
    return Advantage("Strong", points=10, features=[Bonus("attr.st", LeveledAmount(amount))])


class TestCharacterSession:
    """Test the session lifecycle around a character."""

    def test_trait_change_installs_features(self, character, settings):
        """Test that adding a trait leads to a new feature map."""
        with CharacterSession(character, settings) as session:
            character.add_trait(strong())
            assert session.wait_for_processing_to_finish(5.0)
            assert character.strength == 12
            assert session.aggregator.install_count >= 1

    def test_trait_update_reinstalls(self, character, settings):
        advantage = strong()
        with CharacterSession(character, settings) as session:
            character.add_trait(advantage)
            assert session.wait_for_processing_to_finish(5.0)
            character.update_trait(advantage, enabled=False)
            assert session.wait_for_processing_to_finish(5.0)
            assert character.strength == 10

    def test_unequipped_equipment_features(self, character, settings):
        belt = Equipment("Belt of Might", features=[Bonus("attr.st", LeveledAmount(1))])
        with CharacterSession(character, settings) as session:
            character.add_trait(belt)
            assert session.wait_for_processing_to_finish(5.0)
            assert character.strength == 11
            character.update_trait(belt, equipped=False)
            assert session.wait_for_processing_to_finish(5.0)
            assert character.strength == 10

    def test_snapshot_waits_for_features(self, character, settings):
        with CharacterSession(character, settings) as session:
            character.add_trait(strong())
            assert session.wait_for_processing_to_finish(5.0)
            character.set_strength(15)
            snapshot = session.snapshot()
        assert snapshot.strength == 13

    def test_dispose_is_idempotent(self, character, settings):
        session = CharacterSession(character, settings)
        session.dispose()
        session.dispose()
        assert session.is_disposed
        assert not session.aggregator.is_running

    def test_dispose_detaches_from_character(self, character, settings, recorder):
        """Test that a closed session ignores later trait changes."""
        session = CharacterSession(character, settings)
        assert session.wait_for_processing_to_finish(5.0)
        scans = session.aggregator.scan_count
        session.dispose()

        character.add_trait(strong())
        assert session.aggregator.scan_count == scans
        assert character.strength == 10

    def test_context_manager_disposes(self, character, settings):
        with CharacterSession(character, settings) as session:
            assert not session.is_disposed
        assert session.is_disposed

    def test_default_timeout_from_settings(self, character, settings):
        with CharacterSession(character, settings) as session:
            assert session.wait_for_processing_to_finish() is True

    def test_repr(self, character, settings):
        with CharacterSession(character, settings) as session:
            assert "disposed=False" in repr(session)

    def test_wait_inside_open_batch_fails_fast(self, character, settings):
        """Test that waiting with a batch open raises instead of timing out."""
        with CharacterSession(character, settings) as session:
            character.start_notify()
            try:
                assert character.holds_open_batch()
                with pytest.raises(RuntimeError, match="notification batch"):
                    session.wait_for_processing_to_finish(5.0)
            finally:
                character.end_notify()
            assert not character.holds_open_batch()
            assert session.wait_for_processing_to_finish(5.0)

    def test_batch_on_another_thread_is_not_ours(self, character):
        opened = threading.Event()
        release = threading.Event()

        def hold_batch():
            character.start_notify()
            opened.set()
            release.wait(5.0)
            character.end_notify()

        worker = threading.Thread(target=hold_batch)
        worker.start()
        try:
            assert opened.wait(5.0)
            assert not character.holds_open_batch()
        finally:
            release.set()
            worker.join(5.0)
