"""Tests for loading traits from YAML."""

import pytest
import yaml

from sheetcalc.engine.fields import FieldId
from sheetcalc.traits.features import Bonus, CostReduction, StringCompare, WeaponBonus
from sheetcalc.traits.loader import (
    AdvantageTemplate,
    FeatureTemplate,
    SkillTemplate,
    TraitLoadError,
    TraitValidationError,
    create_traits_from_data,
    load_traits_from_directory,
    load_traits_from_file,
    load_yaml_file,
)
from sheetcalc.traits.models import ContainerType, Difficulty


def write_yaml(path, data):
    with open(path, "w", encoding="utf-8") as f:
        yaml.dump(data, f)
    return path


SAMPLE = {
    "traits": {
        "advantages": [
            {
                "name": "Lifting ST",
                "levels": 3,
                "points_per_level": 3,
                "features": [{"key": "attr.st.lifting", "amount": 1, "per_level": True}],
            },
            {
                "name": "Dwarf",
                "container_type": "race",
                "children": [
                    {"name": "Extra Fatigue", "points": 9, "features": [{"key": "attr.fp", "amount": 3}]},
                    {"name": "Greed", "points": -15},
                ],
            },
        ],
        "skills": [
            {"name": "Axe/Mace", "attribute": "dx", "difficulty": "a", "points": 4},
            {"name": "Armoury", "specialization": "Melee Weapons", "attribute": "iq", "points": 2},
        ],
        "spells": [{"name": "Light", "college": "Light and Darkness", "points": 1}],
        "equipment": [
            {
                "name": "Axe",
                "weight": 4.0,
                "value": 50.0,
                "modifiers": [
                    {"name": "Balanced", "features": [{"key": "skill.axe/mace", "amount": 1}]},
                    {"name": "Cheap", "enabled": False},
                ],
            },
            {"name": "Tent", "weight": 12.0, "carried": False},
        ],
    }
}


class TestFeatureTemplate:
    """Test building features from YAML data."""

    def test_bonus_is_default(self):
        feature = FeatureTemplate(key="Attr.ST", amount=2).create()
        assert isinstance(feature, Bonus)
        assert feature.key == "attr.st"
        assert feature.amount.adjusted_amount == 2

    def test_cost_reduction(self):
        feature = FeatureTemplate(type="cost_reduction", key="attr.ht", percentage=20).create()
        assert feature == CostReduction("attr.ht", 20)

    def test_weapon_bonus(self):
        feature = FeatureTemplate(
            type="weapon_bonus",
            key="weapon.damage",
            amount=1,
            name={"compare": "starts_with", "qualifier": "axe"},
            level={"compare": "at_least", "qualifier": 2},
        ).create()
        assert isinstance(feature, WeaponBonus)
        assert feature.name.compare is StringCompare.STARTS_WITH
        assert feature.level_criteria.qualifier == 2

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            FeatureTemplate(type="penalty", key="attr.st")

    def test_negative_percentage(self):
        with pytest.raises(ValueError):
            FeatureTemplate(type="cost_reduction", key="attr.st", percentage=-10)


class TestTemplates:
    """Test the trait templates."""

    def test_skill_attribute_alias(self):
        skill = SkillTemplate(name="Lockpicking", attribute="IQ", difficulty="a").create()
        assert skill.attribute is FieldId.INTELLIGENCE
        assert skill.difficulty is Difficulty.AVERAGE

    def test_skill_full_attribute_id(self):
        assert SkillTemplate(name="Observation", attribute="attr.per").create().attribute is FieldId.PERCEPTION

    def test_skill_bad_difficulty(self):
        with pytest.raises(ValueError):
            SkillTemplate(name="Lockpicking", difficulty="Q")

    def test_non_container_with_children(self):
        template = AdvantageTemplate(name="Fit", children=[{"name": "Very Fit"}])
        with pytest.raises(TraitValidationError):
            template.create()


class TestCreateTraits:
    """Test turning a traits mapping into live traits."""

    def test_creates_every_kind(self):
        traits = create_traits_from_data(SAMPLE["traits"])

        assert [advantage.name for advantage in traits.advantages] == ["Lifting ST", "Dwarf"]
        assert traits.advantages[1].container_type is ContainerType.RACE
        assert traits.advantages[1].adjusted_points == -6
        assert traits.skills[1].display_name == "Armoury (Melee Weapons)"
        assert traits.spells[0].difficulty is Difficulty.HARD
        assert [item.name for item in traits.carried_equipment] == ["Axe"]
        assert [item.name for item in traits.other_equipment] == ["Tent"]
        axe = traits.carried_equipment[0]
        assert [modifier.name for modifier in axe.modifiers] == ["Balanced", "Cheap"]
        assert axe.modifiers[0].features[0].key == "skill.axe/mace"
        assert axe.modifiers[1].enabled is False

    def test_invalid_data(self):
        with pytest.raises(TraitValidationError, match="Invalid trait data"):
            create_traits_from_data({"skills": [{"points": 2}]})

    def test_invalid_skill_attribute(self):
        with pytest.raises(TraitValidationError):
            create_traits_from_data({"skills": [{"name": "Running", "attribute": "attr.move"}]})


class TestLoadYamlFile:
    """Test reading trait YAML files."""

    def test_load_valid_file(self, tmp_path):
        path = write_yaml(tmp_path / "dwarf.yaml", SAMPLE)
        data = load_yaml_file(path)
        assert set(data) == {"advantages", "skills", "spells", "equipment"}

    def test_missing_file(self, tmp_path):
        with pytest.raises(TraitLoadError, match="File not found"):
            load_yaml_file(tmp_path / "missing.yaml")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        with pytest.raises(TraitLoadError, match="Empty YAML file"):
            load_yaml_file(path)

    def test_missing_traits_key(self, tmp_path):
        path = write_yaml(tmp_path / "other.yaml", {"other_data": []})
        with pytest.raises(TraitLoadError, match="Missing 'traits' key"):
            load_yaml_file(path)

    def test_traits_not_a_mapping(self, tmp_path):
        path = write_yaml(tmp_path / "list.yaml", {"traits": ["Fit"]})
        with pytest.raises(TraitLoadError, match="must be a mapping"):
            load_yaml_file(path)

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("traits: [unclosed", encoding="utf-8")
        with pytest.raises(TraitLoadError, match="YAML parsing error"):
            load_yaml_file(path)


class TestLoadTraits:
    """Test loading trait files and directories."""

    def test_load_file(self, tmp_path):
        traits = load_traits_from_file(write_yaml(tmp_path / "dwarf.yaml", SAMPLE))
        assert len(traits.skills) == 2

    def test_load_directory_merges_in_name_order(self, tmp_path):
        write_yaml(tmp_path / "b.yml", {"traits": {"skills": [{"name": "Second"}]}})
        write_yaml(tmp_path / "a.yaml", {"traits": {"skills": [{"name": "First"}]}})
        (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")

        traits = load_traits_from_directory(tmp_path)
        assert [skill.name for skill in traits.skills] == ["First", "Second"]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(TraitLoadError, match="does not exist"):
            load_traits_from_directory(tmp_path / "nope")

    def test_not_a_directory(self, tmp_path):
        path = write_yaml(tmp_path / "dwarf.yaml", SAMPLE)
        with pytest.raises(TraitLoadError, match="Not a directory"):
            load_traits_from_directory(path)

    def test_directory_without_yaml(self, tmp_path):
        with pytest.raises(TraitLoadError, match="No YAML files"):
            load_traits_from_directory(tmp_path)
