"""
Trait loader module for sheetcalc.

Handles loading and validating trait definitions from YAML files and turning
them into live trait objects.
"""

from pathlib import Path
from typing import Any, Literal

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from sheetcalc.engine.fields import FieldId
from sheetcalc.traits.features import (
    Bonus,
    CostReduction,
    Feature,
    IntegerCriteria,
    LeveledAmount,
    NumericCompare,
    StringCompare,
    StringCriteria,
    WeaponBonus,
)
from sheetcalc.traits.models import (
    Advantage,
    ContainerType,
    Difficulty,
    Equipment,
    EquipmentModifier,
    Modifier,
    Skill,
    Spell,
    TraitLists,
)

logger = structlog.get_logger(__name__)

# Short attribute names accepted for skills, besides full field ids.
ATTRIBUTE_ALIASES = {
    "st": FieldId.STRENGTH,
    "dx": FieldId.DEXTERITY,
    "iq": FieldId.INTELLIGENCE,
    "ht": FieldId.HEALTH,
    "will": FieldId.WILL,
    "per": FieldId.PERCEPTION,
}


class TraitLoadError(Exception):
    """Raised when there's an error loading trait data."""

    pass


class TraitValidationError(Exception):
    """Raised when trait validation fails."""

    pass


class StringCriteriaTemplate(BaseModel):
    """String matcher for weapon bonus qualifiers."""

    compare: StringCompare = Field(default=StringCompare.ANY, description="Comparison to apply")
    qualifier: str = Field(default="", description="Text to compare against")


class IntegerCriteriaTemplate(BaseModel):
    """Integer matcher for weapon bonus relative skill level."""

    compare: NumericCompare = Field(default=NumericCompare.AT_LEAST, description="Comparison to apply")
    qualifier: int = Field(default=0, description="Value to compare against")


class FeatureTemplate(BaseModel):
    """
    A feature as written in YAML.

    Attributes:
        type: bonus, cost_reduction or weapon_bonus
        key: Field id or lookup key the feature applies to
        amount: Bonus amount (bonus and weapon_bonus)
        per_level: Whether the amount scales with the owner's level
        percentage: Cost reduction percentage (cost_reduction)
        name: Skill name criteria (weapon_bonus)
        specialization: Skill specialization criteria (weapon_bonus)
        level: Relative skill level criteria (weapon_bonus)
    """

    type: Literal["bonus", "cost_reduction", "weapon_bonus"] = Field(
        default="bonus", description="Feature kind"
    )
    key: str = Field(..., min_length=1, description="Lookup key")
    amount: float = Field(default=0, description="Bonus amount")
    per_level: bool = Field(default=False, description="Scale amount by level")
    percentage: int = Field(default=0, ge=0, description="Cost reduction percentage")
    name: StringCriteriaTemplate = Field(default_factory=StringCriteriaTemplate)
    specialization: StringCriteriaTemplate = Field(default_factory=StringCriteriaTemplate)
    level: IntegerCriteriaTemplate = Field(default_factory=IntegerCriteriaTemplate)

    def create(self) -> Feature:
        """Build the immutable feature."""
        amount = LeveledAmount(amount=self.amount, per_level=self.per_level)
        if self.type == "cost_reduction":
            return CostReduction(self.key, percentage=self.percentage)
        if self.type == "weapon_bonus":
            return WeaponBonus(
                self.key,
                amount=amount,
                name=StringCriteria(self.name.compare, self.name.qualifier),
                specialization=StringCriteria(
                    self.specialization.compare, self.specialization.qualifier
                ),
                level_criteria=IntegerCriteria(self.level.compare, self.level.qualifier),
            )
        return Bonus(self.key, amount=amount)


class ModifierTemplate(BaseModel):
    """An advantage modifier as written in YAML."""

    name: str = Field(..., description="Modifier name")
    cost_percent: int = Field(default=0, description="Cost adjustment percentage")
    levels: int = Field(default=0, ge=0, description="Modifier levels")
    enabled: bool = Field(default=True, description="Whether the modifier applies")
    features: list[FeatureTemplate] = Field(default_factory=list)

    def create(self) -> Modifier:
        return Modifier(
            name=self.name,
            cost_percent=self.cost_percent,
            levels=self.levels,
            enabled=self.enabled,
            features=[feature.create() for feature in self.features],
        )


class AdvantageTemplate(BaseModel):
    """An advantage, disadvantage, quirk or container as written in YAML."""

    name: str = Field(..., description="Advantage name")
    points: int = Field(default=0, description="Base point cost")
    levels: int = Field(default=0, ge=0, description="Levels taken")
    points_per_level: int = Field(default=0, description="Point cost per level")
    container_type: ContainerType = Field(default=ContainerType.NONE, description="none, group or race")
    enabled: bool = Field(default=True, description="Whether features apply")
    children: list["AdvantageTemplate"] = Field(default_factory=list)
    modifiers: list[ModifierTemplate] = Field(default_factory=list)
    features: list[FeatureTemplate] = Field(default_factory=list)

    def create(self) -> Advantage:
        if self.children and self.container_type is ContainerType.NONE:
            raise TraitValidationError(
                f"Advantage '{self.name}' has children but is not a container"
            )
        return Advantage(
            name=self.name,
            points=self.points,
            levels=self.levels,
            points_per_level=self.points_per_level,
            container_type=self.container_type,
            children=[child.create() for child in self.children],
            modifiers=[modifier.create() for modifier in self.modifiers],
            features=[feature.create() for feature in self.features],
            enabled=self.enabled,
        )


class SkillTemplate(BaseModel):
    """A skill as written in YAML."""

    name: str = Field(..., description="Skill name")
    specialization: str = Field(default="", description="Skill specialization")
    attribute: FieldId = Field(default=FieldId.DEXTERITY, description="Controlling attribute")
    difficulty: str = Field(default="A", description="E, A, H or VH")
    points: int = Field(default=1, ge=0, description="Points spent")
    features: list[FeatureTemplate] = Field(default_factory=list)

    @field_validator("attribute", mode="before")
    @classmethod
    def resolve_attribute(cls, value: Any) -> Any:
        if isinstance(value, str):
            return ATTRIBUTE_ALIASES.get(value.lower(), value)
        return value

    @field_validator("difficulty")
    @classmethod
    def validate_difficulty(cls, value: str) -> str:
        Difficulty.from_code(value)
        return value.upper()

    def create(self) -> Skill:
        return Skill(
            name=self.name,
            specialization=self.specialization,
            attribute=self.attribute,
            difficulty=Difficulty.from_code(self.difficulty),
            points=self.points,
            features=[feature.create() for feature in self.features],
        )


class SpellTemplate(BaseModel):
    """A spell as written in YAML."""

    name: str = Field(..., description="Spell name")
    college: str = Field(default="", description="College of magic")
    difficulty: str = Field(default="H", description="H or VH")
    points: int = Field(default=1, ge=0, description="Points spent")
    features: list[FeatureTemplate] = Field(default_factory=list)

    @field_validator("difficulty")
    @classmethod
    def validate_difficulty(cls, value: str) -> str:
        Difficulty.from_code(value)
        return value.upper()

    def create(self) -> Spell:
        return Spell(
            name=self.name,
            college=self.college,
            difficulty=Difficulty.from_code(self.difficulty),
            points=self.points,
            features=[feature.create() for feature in self.features],
        )


class EquipmentModifierTemplate(BaseModel):
    """An equipment modifier as written in YAML."""

    name: str = Field(..., description="Modifier name")
    enabled: bool = Field(default=True, description="Whether the modifier applies")
    features: list[FeatureTemplate] = Field(default_factory=list)

    def create(self) -> EquipmentModifier:
        return EquipmentModifier(
            name=self.name,
            enabled=self.enabled,
            features=[feature.create() for feature in self.features],
        )


class EquipmentTemplate(BaseModel):
    """A piece of equipment as written in YAML."""

    name: str = Field(..., description="Item name")
    quantity: int = Field(default=1, ge=0, description="Number of items")
    weight: float = Field(default=0.0, ge=0, description="Weight per item")
    value: float = Field(default=0.0, ge=0, description="Value per item")
    equipped: bool = Field(default=True, description="Whether the item is in use")
    carried: bool = Field(default=True, description="Carried, or stored elsewhere")
    features: list[FeatureTemplate] = Field(default_factory=list)
    modifiers: list[EquipmentModifierTemplate] = Field(default_factory=list)

    def create(self) -> Equipment:
        return Equipment(
            name=self.name,
            quantity=self.quantity,
            weight=self.weight,
            value=self.value,
            equipped=self.equipped,
            features=[feature.create() for feature in self.features],
            modifiers=[modifier.create() for modifier in self.modifiers],
        )


class TraitFile(BaseModel):
    """The ``traits`` section of a trait YAML file."""

    advantages: list[AdvantageTemplate] = Field(default_factory=list)
    skills: list[SkillTemplate] = Field(default_factory=list)
    spells: list[SpellTemplate] = Field(default_factory=list)
    equipment: list[EquipmentTemplate] = Field(default_factory=list)


def load_yaml_file(file_path: Path) -> dict[str, Any]:
    """
    Load a YAML file containing trait definitions.

    Args:
        file_path: Path to the YAML file

    Returns:
        The ``traits`` mapping

    Raises:
        TraitLoadError: If the file cannot be loaded or parsed
    """
    try:
        with open(file_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise TraitLoadError(f"YAML parsing error in {file_path}: {e}") from e
    except FileNotFoundError as e:
        raise TraitLoadError(f"File not found: {file_path}") from e
    except OSError as e:
        raise TraitLoadError(f"Error loading {file_path}: {e}") from e

    if not data:
        raise TraitLoadError(f"Empty YAML file: {file_path}")

    if not isinstance(data, dict) or "traits" not in data:
        raise TraitLoadError(f"Missing 'traits' key in {file_path}")

    traits = data["traits"]
    if not isinstance(traits, dict):
        raise TraitLoadError(f"'traits' must be a mapping in {file_path}")

    return traits


def create_traits_from_data(traits_data: dict[str, Any], file_path: Path | None = None) -> TraitLists:
    """
    Create live trait containers from a ``traits`` mapping.

    Args:
        traits_data: The ``traits`` mapping
        file_path: Source file, for error messages

    Returns:
        New trait containers

    Raises:
        TraitValidationError: If the data fails validation
    """
    source = file_path or "<data>"
    try:
        parsed = TraitFile.model_validate(traits_data)
    except ValidationError as e:
        raise TraitValidationError(f"Invalid trait data in {source}: {e}") from e

    traits = TraitLists()
    try:
        traits.advantages.extend(template.create() for template in parsed.advantages)
        traits.skills.extend(template.create() for template in parsed.skills)
        traits.spells.extend(template.create() for template in parsed.spells)
        for template in parsed.equipment:
            container = traits.carried_equipment if template.carried else traits.other_equipment
            container.append(template.create())
    except ValueError as e:
        raise TraitValidationError(f"Invalid trait data in {source}: {e}") from e
    return traits


def load_traits_from_file(file_path: Path) -> TraitLists:
    """
    Load the traits defined in one YAML file.

    Raises:
        TraitLoadError: If the file cannot be loaded
        TraitValidationError: If trait validation fails
    """
    traits = create_traits_from_data(load_yaml_file(file_path), file_path)
    logger.info(
        "traits_loaded",
        path=str(file_path),
        advantages=len(traits.advantages),
        skills=len(traits.skills),
        spells=len(traits.spells),
        equipment=len(traits.carried_equipment) + len(traits.other_equipment),
    )
    return traits


def load_traits_from_directory(directory: Path) -> TraitLists:
    """
    Load and merge all trait YAML files in a directory.

    Args:
        directory: Path to the directory containing YAML files

    Returns:
        Trait containers holding every file's traits, in file name order

    Raises:
        TraitLoadError: If directory doesn't exist or files can't be loaded
        TraitValidationError: If trait validation fails
    """
    if not directory.exists():
        raise TraitLoadError(f"Directory does not exist: {directory}")

    if not directory.is_dir():
        raise TraitLoadError(f"Not a directory: {directory}")

    yaml_files = sorted(list(directory.glob("*.yaml")) + list(directory.glob("*.yml")))
    if not yaml_files:
        raise TraitLoadError(f"No YAML files found in {directory}")

    merged = TraitLists()
    for yaml_file in yaml_files:
        traits = load_traits_from_file(yaml_file)
        merged.advantages.extend(traits.advantages)
        merged.skills.extend(traits.skills)
        merged.spells.extend(traits.spells)
        merged.carried_equipment.extend(traits.carried_equipment)
        merged.other_equipment.extend(traits.other_equipment)
    return merged
