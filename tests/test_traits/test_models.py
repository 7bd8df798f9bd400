"""Tests for trait models and point math."""

import pytest

from sheetcalc.engine.fields import FieldId
from sheetcalc.traits.models import (
    Advantage,
    ContainerType,
    Difficulty,
    Equipment,
    Modifier,
    Skill,
    Spell,
    TraitLists,
    modify_points,
    skill_level,
)


class TestModifyPoints:
    """Test percentage point adjustments."""

    def test_positive_rounds_to_nearest(self):
        """Test enhancements round to the nearest point."""
        assert modify_points(10, 50) == 15
        assert modify_points(5, 10) == 6
        assert modify_points(5, 5) == 5

    def test_negative_truncates(self):
        """Test limitations drop fractions toward zero."""
        assert modify_points(15, -30) == 11
        assert modify_points(-10, -50) == -5

    def test_zero_percentage(self):
        assert modify_points(25, 0) == 25


class TestSkillLevel:
    """Test the skill level formula."""

    def test_no_points_is_unknown(self):
        assert skill_level(10, Difficulty.EASY, 0) is None

    @pytest.mark.parametrize(
        ("points", "expected"),
        [(1, 9), (2, 10), (3, 10), (4, 11), (8, 12), (12, 13)],
    )
    def test_average_skill_by_points(self, points, expected):
        assert skill_level(10, Difficulty.AVERAGE, points) == expected

    def test_difficulty_offsets(self):
        assert skill_level(10, Difficulty.EASY, 1) == 10
        assert skill_level(10, Difficulty.HARD, 1) == 8
        assert skill_level(10, Difficulty.VERY_HARD, 1) == 7

    def test_bonus_adds(self):
        assert skill_level(12, Difficulty.AVERAGE, 4, bonus=2) == 15


class TestDifficulty:
    """Test Difficulty lookups."""

    def test_from_code(self):
        assert Difficulty.from_code("vh") is Difficulty.VERY_HARD
        assert Difficulty.from_code("A") is Difficulty.AVERAGE

    def test_unknown_code(self):
        with pytest.raises(ValueError, match="Unknown difficulty"):
            Difficulty.from_code("X")


class TestAdvantage:
    """Test advantage point calculation."""

    def test_leveled_points(self):
        advantage = Advantage("Lifting ST", levels=3, points_per_level=3)
        assert advantage.adjusted_points == 9

    def test_modifier_levels_multiply(self):
        modifier = Modifier("Extended", cost_percent=20, levels=2)
        assert modifier.percentage == 40
        advantage = Advantage("Telepathy", points=10, modifiers=[modifier])
        assert advantage.adjusted_points == 14

    def test_disabled_modifier_is_ignored(self):
        advantage = Advantage(
            "Flight", points=40, modifiers=[Modifier("Winged", cost_percent=-25, enabled=False)]
        )
        assert advantage.adjusted_points == 40

    def test_limitations_floor_at_minus_80(self):
        """Test stacked limitations never cut more than 80%."""
        advantage = Advantage(
            "Magery",
            points=10,
            modifiers=[Modifier("One College", cost_percent=-60), Modifier("Dark-Aspected", cost_percent=-50)],
        )
        assert advantage.modifier_percentage == -80
        assert advantage.adjusted_points == 2

    def test_container_sums_children(self):
        group = Advantage(
            "Template",
            container_type=ContainerType.GROUP,
            children=[Advantage("Fit", points=5), Advantage("Honesty", points=-10)],
        )
        assert group.is_container
        assert group.adjusted_points == -5

    def test_walk_is_depth_first(self):
        inner = Advantage("Inner", container_type=ContainerType.GROUP, children=[Advantage("Leaf")])
        outer = Advantage("Outer", container_type=ContainerType.GROUP, children=[inner, Advantage("Last")])
        assert [advantage.name for advantage in outer.walk()] == ["Outer", "Inner", "Leaf", "Last"]

    def test_identity_equality(self):
        assert Advantage("Fit", points=5) != Advantage("Fit", points=5)


class TestSkillAndSpell:
    """Test skill and spell models."""

    def test_skill_attribute_from_string(self):
        skill = Skill("Lifting", attribute="attr.ht")
        assert skill.attribute is FieldId.HEALTH

    def test_skill_rejects_non_skill_attribute(self):
        with pytest.raises(ValueError):
            Skill("Running", attribute=FieldId.BASIC_MOVE)

    def test_bonus_keys(self):
        assert Skill("Broadsword").bonus_key == "skill.broadsword"
        assert Spell("Fireball").bonus_key == "spell.fireball"

    def test_display_name(self):
        assert Skill("Guns", specialization="Pistol").display_name == "Guns (Pistol)"
        assert Skill("Stealth").display_name == "Stealth"

    def test_spells_use_iq(self):
        assert Spell("Light").attribute is FieldId.INTELLIGENCE


class TestEquipment:
    """Test equipment totals."""

    def test_extended_values(self):
        item = Equipment("Arrow", quantity=12, weight=0.1, value=2.0)
        assert item.extended_weight == pytest.approx(1.2)
        assert item.extended_value == 24.0

    def test_contributes_features(self):
        assert Equipment("Ring").contributes_features
        assert not Equipment("Ring", equipped=False).contributes_features
        assert not Equipment("Ring", quantity=0).contributes_features


class TestTraitLists:
    """Test the trait containers."""

    def test_list_for(self):
        traits = TraitLists()
        assert traits.list_for(Advantage("Fit")) is traits.advantages
        assert traits.list_for(Spell("Light")) is traits.spells
        assert traits.list_for(Equipment("Tent"), carried=False) is traits.other_equipment

    def test_list_for_rejects_non_traits(self):
        with pytest.raises(TypeError):
            TraitLists().list_for(42)

    def test_all_advantages_includes_children(self):
        traits = TraitLists(
            advantages=[
                Advantage("Race", container_type=ContainerType.RACE, children=[Advantage("Night Vision")]),
                Advantage("Fit"),
            ]
        )
        assert [advantage.name for advantage in traits.all_advantages()] == ["Race", "Night Vision", "Fit"]
