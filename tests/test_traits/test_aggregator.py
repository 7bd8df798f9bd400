"""Tests for feature aggregation."""

import threading

import pytest

from sheetcalc.traits.aggregator import (
    SCAN_STAGES,
    AggregatorState,
    FeatureAggregator,
    ScanAborted,
    build_feature_map,
)
from sheetcalc.traits.features import EMPTY_FEATURE_MAP, Bonus, CostReduction, LeveledAmount
from sheetcalc.traits.models import (
    Advantage,
    ContainerType,
    Equipment,
    EquipmentModifier,
    Modifier,
    Skill,
    Spell,
    TraitLists,
)


def st_bonus(amount=1, per_level=False):
    return Bonus("attr.st", LeveledAmount(amount, per_level=per_level))


@pytest.fixture
def aggregator(character):
    aggregator = FeatureAggregator(character, idle_wait=0.05, retry_backoff=0.01)
    yield aggregator
    aggregator.dispose()


class TestBuildFeatureMap:
    """Test collecting features from trait containers."""

    def test_empty_traits(self):
        assert len(build_feature_map(TraitLists())) == 0

    def test_advantage_levels_scale_bonuses(self):
        """Test per-level bonuses are scaled by the advantage level."""
        traits = TraitLists(advantages=[Advantage("Strong", levels=3, features=[st_bonus(per_level=True)])])
        (bonus,) = build_feature_map(traits).features_for("attr.st")
        assert bonus.amount.adjusted_amount == 3

    def test_modifier_levels_scale_modifier_bonuses(self):
        modifier = Modifier("Boost", levels=2, features=[st_bonus(per_level=True)])
        traits = TraitLists(advantages=[Advantage("Strong", levels=5, modifiers=[modifier])])
        (bonus,) = build_feature_map(traits).features_for("attr.st")
        assert bonus.amount.adjusted_amount == 2

    def test_disabled_traits_contribute_nothing(self):
        traits = TraitLists(
            advantages=[
                Advantage("Off", enabled=False, features=[st_bonus()]),
                Advantage("On", modifiers=[Modifier("Off", enabled=False, features=[st_bonus()])]),
            ]
        )
        assert build_feature_map(traits).features_for("attr.st") == ()

    def test_container_children_contribute(self):
        traits = TraitLists(
            advantages=[
                Advantage(
                    "Ogre",
                    container_type=ContainerType.RACE,
                    children=[
                        Advantage("Huge", features=[st_bonus(4)]),
                        Advantage("Dense", features=[CostReduction("attr.st", 10)]),
                    ],
                )
            ]
        )
        feature_map = build_feature_map(traits)
        assert len(feature_map.features_for("attr.st")) == 2

    def test_skills_and_spells_contribute(self):
        traits = TraitLists(
            skills=[Skill("Body Control", features=[Bonus("attr.ht", LeveledAmount(1))])],
            spells=[Spell("Might", features=[st_bonus(2)])],
        )
        feature_map = build_feature_map(traits)
        assert set(feature_map) == {"attr.ht", "attr.st"}

    def test_only_equipped_carried_items_contribute(self):
        traits = TraitLists(
            carried_equipment=[
                Equipment("Belt", features=[st_bonus()]),
                Equipment("Ring", equipped=False, features=[st_bonus()]),
                Equipment("Gloves", quantity=0, features=[st_bonus()]),
            ],
            other_equipment=[Equipment("Stored Belt", features=[st_bonus()])],
        )
        assert len(build_feature_map(traits).features_for("attr.st")) == 1

    def test_enabled_equipment_modifiers_contribute(self):
        """Test only enabled modifiers on equipped items add features."""
        traits = TraitLists(
            carried_equipment=[
                Equipment(
                    "Sword",
                    modifiers=[
                        EquipmentModifier("Fine", features=[st_bonus(1)]),
                        EquipmentModifier("Cursed", enabled=False, features=[st_bonus(-3)]),
                    ],
                ),
                Equipment(
                    "Spare Sword",
                    equipped=False,
                    modifiers=[EquipmentModifier("Fine", features=[st_bonus(1)])],
                ),
            ]
        )
        (bonus,) = build_feature_map(traits).features_for("attr.st")
        assert bonus.amount.adjusted_amount == 1

    def test_checkpoint_called_after_each_stage(self):
        stages = []
        build_feature_map(TraitLists(), stages.append)
        assert stages == list(SCAN_STAGES)

    def test_checkpoint_can_cancel(self):
        def checkpoint(stage):
            if stage == "skills":
                raise ScanAborted(stage)

        with pytest.raises(ScanAborted):
            build_feature_map(TraitLists(), checkpoint)


class TestFeatureAggregator:
    """Test the background aggregation worker."""

    def test_installs_features(self, character, aggregator):
        """Test a requested scan installs a new feature map."""
        character.add_trait(Advantage("Strong", features=[st_bonus(2)]))
        aggregator.start()
        aggregator.mark_for_update()

        assert aggregator.wait_for_processing_to_finish(5.0)
        assert character.strength == 12
        assert aggregator.install_count == 1
        assert aggregator.state is AggregatorState.IDLE

    def test_start_twice_is_harmless(self, aggregator):
        aggregator.start()
        aggregator.start()
        assert aggregator.is_running

    def test_idle_without_requests(self, aggregator):
        aggregator.start()
        assert aggregator.wait_for_processing_to_finish(1.0)
        assert aggregator.scan_count == 0

    def test_change_during_scan_restarts_it(self, character):
        """Test a scan that goes stale is discarded and run again."""
        entered = threading.Event()
        proceed = threading.Event()
        stages = []

        def on_stage(stage):
            stages.append(stage)
            if len(stages) == 1:
                entered.set()
                proceed.wait(5.0)

        aggregator = FeatureAggregator(character, idle_wait=0.05, on_stage=on_stage)
        try:
            aggregator.start()
            character.add_trait(Advantage("Strong", features=[st_bonus(1)]))
            aggregator.mark_for_update()
            assert entered.wait(5.0)
            assert aggregator.state is AggregatorState.SCANNING

            character.traits.advantages[0].features.append(st_bonus(2))
            aggregator.mark_for_update()
            aggregator.mark_for_update()
            proceed.set()

            assert aggregator.wait_for_processing_to_finish(5.0)
            assert aggregator.scan_count == 2
            assert aggregator.abort_count == 1
            assert aggregator.install_count == 1
            assert character.strength == 13
        finally:
            aggregator.dispose()

    def test_failed_install_is_retried(self, character, aggregator, monkeypatch):
        install = character.set_feature_map
        calls = []

        def flaky(feature_map):
            calls.append(feature_map)
            if len(calls) == 1:
                raise RuntimeError("boom")
            install(feature_map)

        monkeypatch.setattr(character, "set_feature_map", flaky)
        character.add_trait(Advantage("Strong", features=[st_bonus(2)]))
        aggregator.start()
        aggregator.mark_for_update()

        assert aggregator.wait_for_processing_to_finish(5.0)
        assert aggregator.failure_count == 1
        assert aggregator.install_count == 1
        assert character.strength == 12

    def test_persistent_failure_keeps_old_map(self, character, aggregator, monkeypatch):
        """Test a scan that always fails leaves the installed map alone."""

        def broken(feature_map):
            raise RuntimeError("boom")

        monkeypatch.setattr(character, "set_feature_map", broken)
        character.add_trait(Advantage("Strong", features=[st_bonus(2)]))
        aggregator.start()
        aggregator.mark_for_update()

        assert not aggregator.wait_for_processing_to_finish(0.3)
        assert aggregator.failure_count >= 1
        assert character.feature_map is EMPTY_FEATURE_MAP
        assert character.strength == 10

    def test_dispose(self, aggregator):
        aggregator.start()
        aggregator.dispose()
        aggregator.dispose()
        assert not aggregator.is_running
        assert aggregator.wait_for_processing_to_finish(0.1)

    def test_start_after_dispose_fails(self, aggregator):
        aggregator.dispose()
        with pytest.raises(RuntimeError):
            aggregator.start()
