"""Field identifiers for the character attribute store.

Every value the store exposes through the generic accessor, and every
notification it emits, is keyed by one of these identifiers. Feature lookup
keys are the lowercase form of the same identifiers, so a bonus keyed
``attr.st`` raises strength.
"""

from enum import Enum, StrEnum


class FieldId(StrEnum):
    """Identifiers for character fields and notifications."""

    # Primary attributes
    STRENGTH = "attr.st"
    LIFTING_STRENGTH = "attr.st.lifting"
    STRIKING_STRENGTH = "attr.st.striking"
    DEXTERITY = "attr.dx"
    INTELLIGENCE = "attr.iq"
    HEALTH = "attr.ht"

    # Secondary attributes
    WILL = "attr.will"
    FRIGHT_CHECK = "attr.fright_check"
    PERCEPTION = "attr.per"
    VISION = "attr.vision"
    HEARING = "attr.hearing"
    TOUCH = "attr.touch"
    TASTE_AND_SMELL = "attr.taste_smell"

    # Movement and defenses
    BASIC_SPEED = "attr.speed"
    BASIC_MOVE = "attr.move"
    DODGE_BONUS = "attr.dodge"
    PARRY_BONUS = "attr.parry"
    BLOCK_BONUS = "attr.block"

    # Hit points
    HIT_POINTS = "attr.hp"
    CURRENT_HIT_POINTS = "hp.current"
    REELING_HIT_POINTS = "hp.reeling"
    UNCONSCIOUS_CHECKS_HIT_POINTS = "hp.unconscious_checks"
    DEATH_CHECK_1_HIT_POINTS = "hp.death_check_1"
    DEATH_CHECK_2_HIT_POINTS = "hp.death_check_2"
    DEATH_CHECK_3_HIT_POINTS = "hp.death_check_3"
    DEATH_CHECK_4_HIT_POINTS = "hp.death_check_4"
    DEAD_HIT_POINTS = "hp.dead"

    # Fatigue points
    FATIGUE_POINTS = "attr.fp"
    CURRENT_FATIGUE_POINTS = "fp.current"
    TIRED_FATIGUE_POINTS = "fp.tired"
    UNCONSCIOUS_CHECKS_FATIGUE_POINTS = "fp.unconscious_checks"
    UNCONSCIOUS_FATIGUE_POINTS = "fp.unconscious"

    # Lifting and damage
    BASIC_LIFT = "lift.basic"
    ONE_HANDED_LIFT = "lift.one_handed"
    TWO_HANDED_LIFT = "lift.two_handed"
    SHOVE_AND_KNOCK_OVER = "lift.shove"
    RUNNING_SHOVE_AND_KNOCK_OVER = "lift.running_shove"
    CARRY_ON_BACK = "lift.carry_on_back"
    SHIFT_SLIGHTLY = "lift.shift_slightly"
    BASIC_THRUST = "damage.thrust"
    BASIC_SWING = "damage.swing"

    # Point summary
    TOTAL_POINTS = "points.total"
    UNSPENT_POINTS = "points.unspent"
    ATTRIBUTE_POINTS = "points.attributes"
    ADVANTAGE_POINTS = "points.advantages"
    DISADVANTAGE_POINTS = "points.disadvantages"
    QUIRK_POINTS = "points.quirks"
    SKILL_POINTS = "points.skills"
    SPELL_POINTS = "points.spells"
    RACE_POINTS = "points.race"

    # Carried totals and encumbrance
    CARRIED_WEIGHT = "carried.weight"
    CARRIED_WEALTH = "carried.wealth"
    ENCUMBRANCE_LEVEL = "encumbrance.level"

    # Bookkeeping
    LAST_MODIFIED = "modified"
    CREATED_ON = "created"

    # Trait notifications
    TRAIT_ADVANTAGE_CHANGED = "trait.advantage"
    TRAIT_SKILL_CHANGED = "trait.skill"
    TRAIT_SPELL_CHANGED = "trait.spell"
    TRAIT_EQUIPMENT_CHANGED = "trait.equipment"
    SKILL_LEVEL = "skill.level"
    SPELL_LEVEL = "spell.level"


# Per-attribute point costs are keyed by this prefix plus the attribute id,
# e.g. "points.cost.attr.st".
POINTS_COST_PREFIX = "points.cost."
MOVE_PREFIX = "encumbrance.move."
DODGE_PREFIX = "encumbrance.dodge."
MAXIMUM_CARRY_PREFIX = "encumbrance.max_carry."
# Cost reduction percentages and feature-derived bonus fields, e.g.
# "cost_reduction.attr.st" and "bonus.attr.dx".
COST_REDUCTION_PREFIX = "cost_reduction."
BONUS_PREFIX = "bonus."

# Prefix for all trait structure notifications.
TRAIT_PREFIX = "trait."

# Feature keys for skill and spell bonuses are this prefix plus the
# lowercase trait name.
SKILL_BONUS_PREFIX = "skill."
SPELL_BONUS_PREFIX = "spell."


class Encumbrance(Enum):
    """Carrying load tiers with weight multiplier and move/dodge penalty."""

    NONE = (0, "None", 1, 0)
    LIGHT = (1, "Light", 2, -1)
    MEDIUM = (2, "Medium", 3, -2)
    HEAVY = (3, "Heavy", 6, -3)
    EXTRA_HEAVY = (4, "Extra-Heavy", 10, -4)

    def __init__(self, index: int, title: str, multiplier: int, penalty: int) -> None:
        self.index = index
        self.title = title
        self.multiplier = multiplier
        self.penalty = penalty

    @classmethod
    def from_index(cls, index: int) -> "Encumbrance":
        """Look up an encumbrance level by its 0-4 index.

        Raises:
            ValueError: If the index is out of range
        """
        for level in cls:
            if level.index == index:
                return level
        raise ValueError(f"Invalid encumbrance index: {index}")


def points_cost_key(field: FieldId) -> str:
    """Key for the point cost of an attribute, e.g. ``points.cost.attr.st``."""
    return POINTS_COST_PREFIX + field.value


def cost_reduction_key(field: FieldId) -> str:
    """Key for the cost reduction percentage of an attribute."""
    return COST_REDUCTION_PREFIX + field.value


def bonus_key(field: FieldId) -> str:
    """Key for the feature-derived bonus applied to a field."""
    return BONUS_PREFIX + field.value


def move_key(level: Encumbrance) -> str:
    """Key for ground move at an encumbrance level."""
    return f"{MOVE_PREFIX}{level.index}"


def dodge_key(level: Encumbrance) -> str:
    """Key for dodge at an encumbrance level."""
    return f"{DODGE_PREFIX}{level.index}"


def maximum_carry_key(level: Encumbrance) -> str:
    """Key for maximum carry at an encumbrance level."""
    return f"{MAXIMUM_CARRY_PREFIX}{level.index}"


def feature_key(key: str) -> str:
    """Normalize a field id or free-form key into a feature lookup key."""
    return str(key).lower()
