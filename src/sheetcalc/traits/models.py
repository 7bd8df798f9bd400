"""Live trait models owned by a character.

Traits are edited on the UI thread and scanned by the feature aggregator on
its own thread, so they are plain mutable objects compared by identity.
"""

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum, StrEnum

from sheetcalc.engine.fields import SKILL_BONUS_PREFIX, SPELL_BONUS_PREFIX, FieldId
from sheetcalc.engine.rules import trunc_div
from sheetcalc.traits.features import Feature

# Total modifier percentage can't reduce a cost by more than this.
MIN_MODIFIER_PERCENTAGE = -80


class ContainerType(StrEnum):
    """Kinds of advantage. Anything other than NONE holds children."""

    NONE = "none"
    GROUP = "group"
    RACE = "race"


class Difficulty(Enum):
    """Skill difficulty with its level offset."""

    EASY = ("E", 0)
    AVERAGE = ("A", -1)
    HARD = ("H", -2)
    VERY_HARD = ("VH", -3)

    def __init__(self, code: str, offset: int) -> None:
        self.code = code
        self.offset = offset

    @classmethod
    def from_code(cls, code: str) -> "Difficulty":
        """Look up a difficulty by its short code (E, A, H, VH).

        Raises:
            ValueError: If the code is unknown
        """
        for difficulty in cls:
            if difficulty.code == code.upper():
                return difficulty
        raise ValueError(f"Unknown difficulty: {code}")


# Attributes a skill may be based on.
SKILL_ATTRIBUTES = (
    FieldId.STRENGTH,
    FieldId.DEXTERITY,
    FieldId.INTELLIGENCE,
    FieldId.HEALTH,
    FieldId.WILL,
    FieldId.PERCEPTION,
)


def modify_points(points: int, percentage: int) -> int:
    """Apply a percentage adjustment to a point value.

    Positive adjustments round to nearest, negative ones truncate toward zero.

    Examples:
        >>> modify_points(10, 50)
        15
        >>> modify_points(15, -30)
        11
    """
    modifier = points * percentage
    if modifier > 0:
        modifier = (modifier + 50) // 100
    else:
        modifier = trunc_div(modifier, 100)
    return points + modifier


def skill_level(attribute_value: int, difficulty: Difficulty, points: int, bonus: int = 0) -> int | None:
    """Calculate a skill level.

    Args:
        attribute_value: Current value of the controlling attribute
        difficulty: Skill difficulty
        points: Points spent; zero or fewer means the skill is not known
        bonus: Feature bonus for this skill

    Returns:
        Skill level, or None if no points are spent
    """
    if points <= 0:
        return None
    if points == 1:
        step = 0
    elif points < 4:
        step = 1
    else:
        step = 1 + points // 4
    return attribute_value + difficulty.offset + step + bonus


@dataclass(eq=False)
class Modifier:
    """An advantage modifier (enhancement or limitation)."""

    name: str
    cost_percent: int = 0
    levels: int = 0
    enabled: bool = True
    features: list[Feature] = field(default_factory=list)

    @property
    def percentage(self) -> int:
        if self.levels > 0:
            return self.cost_percent * self.levels
        return self.cost_percent


@dataclass(eq=False)
class Advantage:
    """An advantage, disadvantage, quirk or container of them.

    Disabled advantages still cost points but contribute no features.
    """

    name: str
    points: int = 0
    levels: int = 0
    points_per_level: int = 0
    container_type: ContainerType = ContainerType.NONE
    children: list["Advantage"] = field(default_factory=list)
    modifiers: list[Modifier] = field(default_factory=list)
    features: list[Feature] = field(default_factory=list)
    enabled: bool = True

    @property
    def is_container(self) -> bool:
        return self.container_type is not ContainerType.NONE

    @property
    def modifier_percentage(self) -> int:
        """Sum of enabled modifier percentages, floored at -80."""
        total = sum(modifier.percentage for modifier in self.modifiers if modifier.enabled)
        return max(total, MIN_MODIFIER_PERCENTAGE)

    @property
    def adjusted_points(self) -> int:
        """Point cost after levels and modifiers; containers sum their children."""
        if self.is_container:
            return sum(child.adjusted_points for child in self.children)
        base = self.points + self.levels * self.points_per_level
        return modify_points(base, self.modifier_percentage)

    def walk(self) -> Iterator["Advantage"]:
        """Yield this advantage and all nested children, depth first."""
        yield self
        for child in self.children:
            yield from child.walk()


@dataclass(eq=False)
class Skill:
    """A skill. ``level`` is cached and maintained by the character."""

    name: str
    specialization: str = ""
    attribute: FieldId = FieldId.DEXTERITY
    difficulty: Difficulty = Difficulty.AVERAGE
    points: int = 1
    features: list[Feature] = field(default_factory=list)
    level: int | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        self.attribute = FieldId(self.attribute)
        if self.attribute not in SKILL_ATTRIBUTES:
            raise ValueError(f"Skill {self.name!r} can't be based on {self.attribute}")

    @property
    def bonus_key(self) -> str:
        return SKILL_BONUS_PREFIX + self.name.lower()

    @property
    def display_name(self) -> str:
        if self.specialization:
            return f"{self.name} ({self.specialization})"
        return self.name


@dataclass(eq=False)
class Spell:
    """A spell. Spells are always based on IQ."""

    name: str
    college: str = ""
    difficulty: Difficulty = Difficulty.HARD
    points: int = 1
    features: list[Feature] = field(default_factory=list)
    level: int | None = field(default=None, compare=False)

    attribute = FieldId.INTELLIGENCE

    @property
    def bonus_key(self) -> str:
        return SPELL_BONUS_PREFIX + self.name.lower()


@dataclass(eq=False)
class EquipmentModifier:
    """A modification applied to one piece of equipment."""

    name: str
    enabled: bool = True
    features: list[Feature] = field(default_factory=list)


@dataclass(eq=False)
class Equipment:
    """A piece of equipment. Weight and value are per unit."""

    name: str
    quantity: int = 1
    weight: float = 0.0
    value: float = 0.0
    equipped: bool = True
    features: list[Feature] = field(default_factory=list)
    modifiers: list[EquipmentModifier] = field(default_factory=list)

    @property
    def extended_weight(self) -> float:
        return self.quantity * self.weight

    @property
    def extended_value(self) -> float:
        return self.quantity * self.value

    @property
    def contributes_features(self) -> bool:
        return self.equipped and self.quantity > 0


Trait = Advantage | Skill | Spell | Equipment


@dataclass(eq=False)
class TraitLists:
    """The live trait containers of one character."""

    advantages: list[Advantage] = field(default_factory=list)
    skills: list[Skill] = field(default_factory=list)
    spells: list[Spell] = field(default_factory=list)
    carried_equipment: list[Equipment] = field(default_factory=list)
    other_equipment: list[Equipment] = field(default_factory=list)

    def all_advantages(self) -> Iterator[Advantage]:
        """Every advantage including nested children."""
        for advantage in tuple(self.advantages):
            yield from advantage.walk()

    def list_for(self, trait: Trait, carried: bool = True) -> list:
        """The container list a trait belongs in.

        Raises:
            TypeError: If ``trait`` is not a trait
        """
        if isinstance(trait, Advantage):
            return self.advantages
        if isinstance(trait, Skill):
            return self.skills
        if isinstance(trait, Spell):
            return self.spells
        if isinstance(trait, Equipment):
            return self.carried_equipment if carried else self.other_equipment
        raise TypeError(f"Not a trait: {type(trait).__name__}")
