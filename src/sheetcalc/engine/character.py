"""Character attribute store.

The store owns base attribute values, the bonus fields derived from the
installed feature map, cost reductions and cached point aggregates. Every
setter follows the same protocol:

1. Compare the new value against the current total; equal values are a no-op.
2. Record an undo edit.
3. Open a notification batch and update the base field.
4. Notify the primary field, then every dependent field whose value changed.
5. Mark the point aggregates that need recomputing and close the batch.

Only :meth:`Character.set_feature_map` is called from another thread. All
mutating entry points share one re-entrant lock.
"""

import math
import sys
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from sheetcalc.engine.dice import Dice
from sheetcalc.engine.fields import (
    Encumbrance,
    FieldId,
    bonus_key,
    cost_reduction_key,
    dodge_key,
    feature_key,
    maximum_carry_key,
    move_key,
    points_cost_key,
)
from sheetcalc.engine.notifier import DirtyFlag, Listener, Notifier
from sheetcalc.engine.rules import (
    MAX_COST_REDUCTION,
    RuleSet,
    basic_lift,
    floor_to_tenth,
    lift_in_display_units,
    points_for_attribute,
    trunc_div,
)
from sheetcalc.engine.snapshot import COST_REDUCTION_FIELDS, CharacterSnapshot
from sheetcalc.engine.undo import UndoRecorder
from sheetcalc.traits.aggregator import build_feature_map
from sheetcalc.traits.features import EMPTY_FEATURE_MAP, Bonus, CostReduction, FeatureMap, WeaponBonus
from sheetcalc.traits.models import (
    Advantage,
    ContainerType,
    Equipment,
    Skill,
    Spell,
    Trait,
    TraitLists,
    skill_level,
)

logger = structlog.get_logger(__name__)

# Relative skill level used when no matching skill is known.
NO_SKILL_LEVEL = -sys.maxsize

LIFT_MULTIPLIERS = {
    FieldId.ONE_HANDED_LIFT: 2,
    FieldId.TWO_HANDED_LIFT: 8,
    FieldId.SHOVE_AND_KNOCK_OVER: 12,
    FieldId.RUNNING_SHOVE_AND_KNOCK_OVER: 24,
    FieldId.CARRY_ON_BACK: 15,
    FieldId.SHIFT_SLIGHTLY: 50,
}

DEATH_CHECKS = (
    FieldId.DEATH_CHECK_1_HIT_POINTS,
    FieldId.DEATH_CHECK_2_HIT_POINTS,
    FieldId.DEATH_CHECK_3_HIT_POINTS,
    FieldId.DEATH_CHECK_4_HIT_POINTS,
)

# Attributes with a point cost, in summary order.
ATTRIBUTE_COST_FIELDS = (
    FieldId.STRENGTH,
    FieldId.DEXTERITY,
    FieldId.INTELLIGENCE,
    FieldId.HEALTH,
    FieldId.WILL,
    FieldId.PERCEPTION,
    FieldId.BASIC_SPEED,
    FieldId.BASIC_MOVE,
    FieldId.HIT_POINTS,
    FieldId.FATIGUE_POINTS,
)

# Bonus-carrying fields and the attribute holding each bonus.
BONUS_FIELDS = {
    FieldId.STRENGTH: "_st_bonus",
    FieldId.LIFTING_STRENGTH: "_lifting_st_bonus",
    FieldId.STRIKING_STRENGTH: "_striking_st_bonus",
    FieldId.DEXTERITY: "_dx_bonus",
    FieldId.INTELLIGENCE: "_iq_bonus",
    FieldId.HEALTH: "_ht_bonus",
    FieldId.WILL: "_will_bonus",
    FieldId.FRIGHT_CHECK: "_fright_check_bonus",
    FieldId.PERCEPTION: "_per_bonus",
    FieldId.VISION: "_vision_bonus",
    FieldId.HEARING: "_hearing_bonus",
    FieldId.TOUCH: "_touch_bonus",
    FieldId.TASTE_AND_SMELL: "_taste_smell_bonus",
    FieldId.BASIC_SPEED: "_speed_bonus",
    FieldId.BASIC_MOVE: "_move_bonus",
    FieldId.DODGE_BONUS: "_dodge_bonus",
    FieldId.PARRY_BONUS: "_parry_bonus",
    FieldId.BLOCK_BONUS: "_block_bonus",
    FieldId.HIT_POINTS: "_hp_bonus",
    FieldId.FATIGUE_POINTS: "_fp_bonus",
}

_MOVE_KEYS = tuple(move_key(level) for level in Encumbrance)
_DODGE_KEYS = tuple(dodge_key(level) for level in Encumbrance)
_MAXIMUM_CARRY_KEYS = tuple(maximum_carry_key(level) for level in Encumbrance)

_HIT_POINT_KEYS = (
    FieldId.HIT_POINTS,
    points_cost_key(FieldId.HIT_POINTS),
    FieldId.REELING_HIT_POINTS,
    FieldId.UNCONSCIOUS_CHECKS_HIT_POINTS,
    *DEATH_CHECKS,
    FieldId.DEAD_HIT_POINTS,
)
_FATIGUE_POINT_KEYS = (
    FieldId.FATIGUE_POINTS,
    points_cost_key(FieldId.FATIGUE_POINTS),
    FieldId.TIRED_FATIGUE_POINTS,
    FieldId.UNCONSCIOUS_CHECKS_FATIGUE_POINTS,
    FieldId.UNCONSCIOUS_FATIGUE_POINTS,
)
_LIFT_KEYS = (
    FieldId.BASIC_LIFT,
    *LIFT_MULTIPLIERS,
    *_MAXIMUM_CARRY_KEYS,
    FieldId.ENCUMBRANCE_LEVEL,
)
_DAMAGE_KEYS = (FieldId.BASIC_THRUST, FieldId.BASIC_SWING)
_MOVE_KEYS_ALL = (FieldId.BASIC_MOVE, points_cost_key(FieldId.BASIC_MOVE), *_MOVE_KEYS, *_DODGE_KEYS)
_SPEED_KEYS = (FieldId.BASIC_SPEED, points_cost_key(FieldId.BASIC_SPEED), *_MOVE_KEYS_ALL)
_WILL_KEYS = (FieldId.WILL, points_cost_key(FieldId.WILL), FieldId.FRIGHT_CHECK)
_SENSE_KEYS = (FieldId.VISION, FieldId.HEARING, FieldId.TOUCH, FieldId.TASTE_AND_SMELL)
_PERCEPTION_KEYS = (FieldId.PERCEPTION, points_cost_key(FieldId.PERCEPTION), *_SENSE_KEYS)

# Fields to recheck after a change to each field, primary first.
DEPENDENTS: dict[FieldId, tuple[str, ...]] = {
    FieldId.STRENGTH: (
        FieldId.STRENGTH,
        points_cost_key(FieldId.STRENGTH),
        FieldId.LIFTING_STRENGTH,
        FieldId.STRIKING_STRENGTH,
        *_HIT_POINT_KEYS,
        *_DAMAGE_KEYS,
        *_LIFT_KEYS,
    ),
    FieldId.LIFTING_STRENGTH: (FieldId.LIFTING_STRENGTH, *_LIFT_KEYS),
    FieldId.STRIKING_STRENGTH: (FieldId.STRIKING_STRENGTH, *_DAMAGE_KEYS),
    FieldId.DEXTERITY: (FieldId.DEXTERITY, points_cost_key(FieldId.DEXTERITY), *_SPEED_KEYS),
    FieldId.HEALTH: (
        FieldId.HEALTH,
        points_cost_key(FieldId.HEALTH),
        *_SPEED_KEYS,
        *_FATIGUE_POINT_KEYS,
    ),
    FieldId.INTELLIGENCE: (
        FieldId.INTELLIGENCE,
        points_cost_key(FieldId.INTELLIGENCE),
        *_WILL_KEYS,
        *_PERCEPTION_KEYS,
    ),
    FieldId.WILL: _WILL_KEYS,
    FieldId.FRIGHT_CHECK: (FieldId.FRIGHT_CHECK,),
    FieldId.PERCEPTION: _PERCEPTION_KEYS,
    FieldId.VISION: (FieldId.VISION,),
    FieldId.HEARING: (FieldId.HEARING,),
    FieldId.TOUCH: (FieldId.TOUCH,),
    FieldId.TASTE_AND_SMELL: (FieldId.TASTE_AND_SMELL,),
    FieldId.BASIC_SPEED: _SPEED_KEYS,
    FieldId.BASIC_MOVE: _MOVE_KEYS_ALL,
    FieldId.DODGE_BONUS: (FieldId.DODGE_BONUS, *_DODGE_KEYS),
    FieldId.PARRY_BONUS: (FieldId.PARRY_BONUS,),
    FieldId.BLOCK_BONUS: (FieldId.BLOCK_BONUS,),
    FieldId.HIT_POINTS: _HIT_POINT_KEYS,
    FieldId.FATIGUE_POINTS: _FATIGUE_POINT_KEYS,
}

# Skill attributes whose skills need new levels after a change to each field.
SKILL_ATTRIBUTES_AFFECTED = {
    FieldId.STRENGTH: frozenset({FieldId.STRENGTH}),
    FieldId.DEXTERITY: frozenset({FieldId.DEXTERITY}),
    FieldId.HEALTH: frozenset({FieldId.HEALTH}),
    FieldId.INTELLIGENCE: frozenset({FieldId.INTELLIGENCE, FieldId.WILL, FieldId.PERCEPTION}),
    FieldId.WILL: frozenset({FieldId.WILL}),
    FieldId.PERCEPTION: frozenset({FieldId.PERCEPTION}),
}

# Every field a feature map installation can touch, each listed once.
INSTALL_KEYS = tuple(
    dict.fromkeys(
        [
            *(key for keys in DEPENDENTS.values() for key in keys),
            *(bonus_key(field) for field in BONUS_FIELDS),
            *(cost_reduction_key(field) for field in COST_REDUCTION_FIELDS),
        ]
    )
)


@dataclass(frozen=True)
class FieldAccessor:
    """Typed getter and optional setter for one field id."""

    getter: Callable[[], Any]
    setter: Callable[[Any], None] | None = None
    value_type: type = int


def _check_value_type(field_id: str, value: Any, value_type: type) -> None:
    """Reject values of the wrong type for a typed setter.

    Raises:
        TypeError: If ``value`` does not match ``value_type``
    """
    if value_type is float:
        valid = isinstance(value, (int, float)) and not isinstance(value, bool)
    elif value_type is int:
        valid = isinstance(value, int) and not isinstance(value, bool)
    else:
        valid = isinstance(value, value_type)
    if not valid:
        raise TypeError(f"{field_id} expects {value_type.__name__}, got {type(value).__name__}")


class Character:
    """The canonical attribute store for one character.

    Args:
        rules: Optional rules in effect; defaults to the standard rules
        traits: Live trait containers; a new empty set if omitted
        total_points: Starting total points
        undo_levels: Maximum undo history length
        created_on: Creation timestamp; now if omitted
    """

    def __init__(
        self,
        rules: RuleSet | None = None,
        traits: TraitLists | None = None,
        *,
        total_points: int = 150,
        undo_levels: int = 100,
        created_on: datetime | None = None,
    ) -> None:
        self.rules = rules or RuleSet()
        self.traits = traits if traits is not None else TraitLists()
        self._lock = threading.RLock()
        self._notifier = Notifier(self, flush=self._flush_aggregates, touch=self._touch_modified)
        self._undo = UndoRecorder(self.set_value_for_id, limit=undo_levels)
        self._feature_map = EMPTY_FEATURE_MAP
        self._created_on = created_on or datetime.now(UTC)
        self._last_modified = self._created_on

        # Base values
        self._st = 10
        self._dx = 10
        self._iq = 10
        self._ht = 10
        self._will_base = 0
        self._per_base = 0
        self._speed_base = 0.0
        self._move_base = 0
        self._hp_base = 0
        self._fp_base = 0
        self._current_hp = ""
        self._current_fp = ""
        self._total_points = total_points

        # Feature-derived values
        for attribute in BONUS_FIELDS.values():
            setattr(self, attribute, 0)
        self._speed_bonus = 0.0
        self._cost_reductions = dict.fromkeys(COST_REDUCTION_FIELDS, 0)

        # Cached aggregates
        self._attribute_points = 0
        self._advantage_points = 0
        self._disadvantage_points = 0
        self._quirk_points = 0
        self._race_points = 0
        self._skill_points = 0
        self._spell_points = 0
        self._weight_carried = 0.0
        self._wealth_carried = 0.0

        self._accessors = self._build_accessors()
        self._update_skill_levels()
        self._flush_aggregates(DirtyFlag.ALL)

    # ------------------------------------------------------------------
    # Primary attributes

    @property
    def strength(self) -> int:
        return self._st + self._st_bonus

    @property
    def lifting_strength(self) -> int:
        """Strength for lifting, including lifting-only bonuses."""
        return self.strength + self._lifting_st_bonus

    @property
    def striking_strength(self) -> int:
        """Strength for damage, including striking-only bonuses."""
        return self.strength + self._striking_st_bonus

    @property
    def dexterity(self) -> int:
        return self._dx + self._dx_bonus

    @property
    def intelligence(self) -> int:
        return self._iq + self._iq_bonus

    @property
    def health(self) -> int:
        return self._ht + self._ht_bonus

    def set_strength(self, value: int) -> None:
        self._edit(FieldId.STRENGTH, "Strength", value, lambda v: setattr(self, "_st", v - self._st_bonus))

    def set_dexterity(self, value: int) -> None:
        self._edit(FieldId.DEXTERITY, "Dexterity", value, lambda v: setattr(self, "_dx", v - self._dx_bonus))

    def set_intelligence(self, value: int) -> None:
        self._edit(
            FieldId.INTELLIGENCE, "Intelligence", value, lambda v: setattr(self, "_iq", v - self._iq_bonus)
        )

    def set_health(self, value: int) -> None:
        self._edit(FieldId.HEALTH, "Health", value, lambda v: setattr(self, "_ht", v - self._ht_bonus))

    # ------------------------------------------------------------------
    # Secondary attributes

    def _secondary_baseline(self) -> int:
        base = self.rules.secondary_base
        return self.intelligence if base is None else base

    @property
    def will(self) -> int:
        return self._will_base + self._will_bonus + self._secondary_baseline()

    @property
    def fright_check(self) -> int:
        return self.will + self._fright_check_bonus

    @property
    def perception(self) -> int:
        return self._per_base + self._per_bonus + self._secondary_baseline()

    @property
    def vision(self) -> int:
        return self.perception + self._vision_bonus

    @property
    def hearing(self) -> int:
        return self.perception + self._hearing_bonus

    @property
    def touch(self) -> int:
        return self.perception + self._touch_bonus

    @property
    def taste_and_smell(self) -> int:
        return self.perception + self._taste_smell_bonus

    def set_will(self, value: int) -> None:
        self._edit(
            FieldId.WILL,
            "Will",
            value,
            lambda v: setattr(self, "_will_base", v - self._will_bonus - self._secondary_baseline()),
        )

    def set_perception(self, value: int) -> None:
        self._edit(
            FieldId.PERCEPTION,
            "Perception",
            value,
            lambda v: setattr(self, "_per_base", v - self._per_bonus - self._secondary_baseline()),
        )

    # ------------------------------------------------------------------
    # Movement and defenses

    @property
    def basic_speed(self) -> float:
        return self._speed_base + self._speed_bonus + (self.dexterity + self.health) / 4.0

    @property
    def basic_move(self) -> int:
        return max(0, self._move_base + self._move_bonus + math.floor(self.basic_speed))

    @property
    def dodge_bonus(self) -> int:
        return self._dodge_bonus

    @property
    def parry_bonus(self) -> int:
        return self._parry_bonus

    @property
    def block_bonus(self) -> int:
        return self._block_bonus

    def set_basic_speed(self, value: float) -> None:
        self._edit(
            FieldId.BASIC_SPEED,
            "Basic Speed",
            float(value),
            lambda v: setattr(
                self, "_speed_base", v - self._speed_bonus - (self.dexterity + self.health) / 4.0
            ),
        )

    def set_basic_move(self, value: int) -> None:
        """Set basic move; negative targets are recorded and applied as 0."""
        self._edit(
            FieldId.BASIC_MOVE,
            "Basic Move",
            max(0, value),
            lambda v: setattr(self, "_move_base", v - self._move_bonus - math.floor(self.basic_speed)),
        )

    def move(self, level: Encumbrance) -> int:
        """Ground move at an encumbrance level; never below 1 unless basic move is 0."""
        basic_move = self.basic_move
        move = trunc_div(basic_move * (10 + 2 * level.penalty), 10)
        if move < 1:
            return 1 if basic_move > 0 else 0
        return move

    def dodge(self, level: Encumbrance) -> int:
        """Dodge at an encumbrance level, never below 1."""
        dodge = math.floor(self.basic_speed) + 3 + level.penalty + self._dodge_bonus
        return max(dodge, 1)

    # ------------------------------------------------------------------
    # Hit and fatigue points

    @property
    def hit_points(self) -> int:
        return self.strength + self._hp_base + self._hp_bonus

    @property
    def current_hit_points(self) -> str:
        return self._current_hp

    @property
    def reeling_hit_points(self) -> int:
        return max(0, trunc_div(self.hit_points - 1, 3))

    @property
    def unconscious_checks_hit_points(self) -> int:
        return 0

    def death_check_hit_points(self, check: int) -> int:
        """Hit point threshold for the 1st through 4th death check."""
        return -check * self.hit_points

    @property
    def dead_hit_points(self) -> int:
        return -5 * self.hit_points

    def set_hit_points(self, value: int) -> None:
        self._edit(
            FieldId.HIT_POINTS,
            "Hit Points",
            value,
            lambda v: setattr(self, "_hp_base", v - self.strength - self._hp_bonus),
        )

    def set_current_hit_points(self, value: str) -> None:
        self._edit(
            FieldId.CURRENT_HIT_POINTS, "Current HP", value, lambda v: setattr(self, "_current_hp", v)
        )

    @property
    def fatigue_points(self) -> int:
        return self.health + self._fp_base + self._fp_bonus

    @property
    def current_fatigue_points(self) -> str:
        return self._current_fp

    @property
    def tired_fatigue_points(self) -> int:
        return max(0, trunc_div(self.fatigue_points - 1, 3))

    @property
    def unconscious_checks_fatigue_points(self) -> int:
        return 0

    @property
    def unconscious_fatigue_points(self) -> int:
        return -self.fatigue_points

    def set_fatigue_points(self, value: int) -> None:
        self._edit(
            FieldId.FATIGUE_POINTS,
            "Fatigue Points",
            value,
            lambda v: setattr(self, "_fp_base", v - self.health - self._fp_bonus),
        )

    def set_current_fatigue_points(self, value: str) -> None:
        self._edit(
            FieldId.CURRENT_FATIGUE_POINTS, "Current FP", value, lambda v: setattr(self, "_current_fp", v)
        )

    # ------------------------------------------------------------------
    # Lift, encumbrance and damage

    @property
    def basic_lift(self) -> float:
        """Basic lift in display weight units."""
        return lift_in_display_units(basic_lift(self.lifting_strength, self.rules), self.rules)

    def lift(self, field_id: FieldId) -> float:
        """A basic lift multiple such as ``FieldId.TWO_HANDED_LIFT``."""
        return floor_to_tenth(self.basic_lift * LIFT_MULTIPLIERS[field_id])

    def maximum_carry(self, level: Encumbrance) -> float:
        return floor_to_tenth(self.basic_lift * level.multiplier)

    @property
    def encumbrance_level(self) -> Encumbrance:
        """The lightest level whose maximum carry covers the weight carried."""
        weight = self._weight_carried
        for level in Encumbrance:
            if self.maximum_carry(level) >= weight:
                return level
        return Encumbrance.EXTRA_HEAVY

    @property
    def basic_thrust(self) -> Dice:
        return self.rules.damage_progression.thrust(self.striking_strength)

    @property
    def basic_swing(self) -> Dice:
        return self.rules.damage_progression.swing(self.striking_strength)

    # ------------------------------------------------------------------
    # Points

    def attribute_cost(self, field_id: FieldId) -> int:
        """Point cost of one attribute's base value.

        Raises:
            KeyError: If the attribute has no point cost
        """
        match field_id:
            case FieldId.STRENGTH:
                return points_for_attribute(self._st - 10, 10, self.cost_reduction(FieldId.STRENGTH))
            case FieldId.DEXTERITY:
                return points_for_attribute(self._dx - 10, 20, self.cost_reduction(FieldId.DEXTERITY))
            case FieldId.INTELLIGENCE:
                return points_for_attribute(self._iq - 10, 20, self.cost_reduction(FieldId.INTELLIGENCE))
            case FieldId.HEALTH:
                return points_for_attribute(self._ht - 10, 10, self.cost_reduction(FieldId.HEALTH))
            case FieldId.WILL:
                return self._will_base * 5
            case FieldId.PERCEPTION:
                return self._per_base * 5
            case FieldId.BASIC_SPEED:
                return int(self._speed_base * 20)
            case FieldId.BASIC_MOVE:
                return self._move_base * 5
            case FieldId.HIT_POINTS:
                return self._hp_base * 2
            case FieldId.FATIGUE_POINTS:
                return self._fp_base * 3
        raise KeyError(f"No point cost for {field_id}")

    @property
    def attribute_points(self) -> int:
        return self._attribute_points

    @property
    def advantage_points(self) -> int:
        return self._advantage_points

    @property
    def disadvantage_points(self) -> int:
        return self._disadvantage_points

    @property
    def quirk_points(self) -> int:
        return self._quirk_points

    @property
    def race_points(self) -> int:
        return self._race_points

    @property
    def skill_points(self) -> int:
        return self._skill_points

    @property
    def spell_points(self) -> int:
        return self._spell_points

    @property
    def spent_points(self) -> int:
        return (
            self._attribute_points
            + self._advantage_points
            + self._disadvantage_points
            + self._quirk_points
            + self._skill_points
            + self._spell_points
            + self._race_points
        )

    @property
    def total_points(self) -> int:
        return self._total_points

    @property
    def unspent_points(self) -> int:
        return self._total_points - self.spent_points

    def set_total_points(self, value: int) -> None:
        self._edit(
            FieldId.TOTAL_POINTS,
            "Total Points",
            value,
            lambda v: setattr(self, "_total_points", v),
            keys=(FieldId.TOTAL_POINTS, FieldId.UNSPENT_POINTS),
        )

    def set_unspent_points(self, value: int) -> None:
        """Adjust total points so that unspent points equal ``value``."""
        with self._lock:
            self.set_total_points(value + self.spent_points)

    @property
    def weight_carried(self) -> float:
        return self._weight_carried

    @property
    def wealth_carried(self) -> float:
        return self._wealth_carried

    @property
    def created_on(self) -> datetime:
        return self._created_on

    @property
    def last_modified(self) -> datetime:
        return self._last_modified

    # ------------------------------------------------------------------
    # Feature map

    @property
    def feature_map(self) -> FeatureMap:
        return self._feature_map

    def integer_bonus_for(self, key: str) -> int:
        """Sum of integer bonuses registered under ``key``, excluding weapon bonuses."""
        return sum(
            feature.amount.integer_adjusted_amount
            for feature in self._feature_map.features_for(feature_key(key))
            if isinstance(feature, Bonus) and not isinstance(feature, WeaponBonus)
        )

    def float_bonus_for(self, key: str) -> float:
        """Sum of fractional bonuses registered under ``key``, excluding weapon bonuses."""
        return sum(
            (
                feature.amount.adjusted_amount
                for feature in self._feature_map.features_for(feature_key(key))
                if isinstance(feature, Bonus) and not isinstance(feature, WeaponBonus)
            ),
            0.0,
        )

    def cost_reduction_for(self, key: str) -> int:
        """Total cost reduction percentage registered under ``key``, at most 80."""
        total = sum(
            feature.percentage
            for feature in self._feature_map.features_for(feature_key(key))
            if isinstance(feature, CostReduction)
        )
        return min(total, MAX_COST_REDUCTION)

    def skill_bonus_for(self, trait: Skill | Spell) -> int:
        return self.integer_bonus_for(trait.bonus_key)

    def best_relative_skill_level(self, name: str, specialization: str = "") -> int:
        """Best level relative to its attribute among skills matching name and specialization.

        Returns:
            The best relative level, or NO_SKILL_LEVEL if no known skill matches
        """
        best = NO_SKILL_LEVEL
        for skill in tuple(self.traits.skills):
            if skill.name.lower() != name.lower() or skill.level is None:
                continue
            if specialization and skill.specialization.lower() != specialization.lower():
                continue
            best = max(best, skill.level - self.attribute_value(skill.attribute))
        return best

    def weapon_bonuses_for(self, key: str, name: str, specialization: str = "") -> list[WeaponBonus]:
        """Weapon bonuses under ``key`` that apply to a weapon used with the named skill."""
        relative_level = self.best_relative_skill_level(name, specialization)
        return [
            feature
            for feature in self._feature_map.features_for(feature_key(key))
            if isinstance(feature, WeaponBonus)
            and feature.applies_to(name, specialization, relative_level)
        ]

    def cost_reduction(self, field_id: FieldId) -> int:
        """Installed cost reduction percentage for a primary attribute."""
        return self._cost_reductions[FieldId(field_id)]

    def set_cost_reduction(self, field_id: FieldId, percentage: int) -> None:
        """Set a primary attribute's cost reduction, clamped to 0 through 80.

        Raises:
            KeyError: If the attribute does not take cost reductions
        """
        field_id = FieldId(field_id)
        if field_id not in self._cost_reductions:
            raise KeyError(f"No cost reduction for {field_id}")
        percentage = max(0, min(percentage, MAX_COST_REDUCTION))
        with self._lock:
            if self._cost_reductions[field_id] == percentage:
                return
            self._cascade(
                (cost_reduction_key(field_id), points_cost_key(field_id)),
                lambda: self._cost_reductions.__setitem__(field_id, percentage),
                dirty=DirtyFlag.ATTRIBUTE_POINTS,
            )

    def bonus(self, field_id: FieldId) -> int | float:
        """Installed feature bonus for a field."""
        return getattr(self, BONUS_FIELDS[FieldId(field_id)])

    def set_bonus(self, field_id: FieldId, value: int | float) -> None:
        """Set the feature-derived bonus of a field.

        Only the feature map installer should call this; bonus changes are
        not recorded for undo.
        """
        field_id = FieldId(field_id)
        attribute = BONUS_FIELDS[field_id]
        with self._lock:
            if getattr(self, attribute) == value:
                return
            self._cascade(
                (*DEPENDENTS[field_id], bonus_key(field_id)),
                lambda: setattr(self, attribute, value),
                skills=SKILL_ATTRIBUTES_AFFECTED.get(field_id),
            )

    def set_strength_bonus(self, value: int) -> None:
        self.set_bonus(FieldId.STRENGTH, value)

    def set_lifting_strength_bonus(self, value: int) -> None:
        self.set_bonus(FieldId.LIFTING_STRENGTH, value)

    def set_striking_strength_bonus(self, value: int) -> None:
        self.set_bonus(FieldId.STRIKING_STRENGTH, value)

    def set_dexterity_bonus(self, value: int) -> None:
        self.set_bonus(FieldId.DEXTERITY, value)

    def set_intelligence_bonus(self, value: int) -> None:
        self.set_bonus(FieldId.INTELLIGENCE, value)

    def set_health_bonus(self, value: int) -> None:
        self.set_bonus(FieldId.HEALTH, value)

    def set_basic_speed_bonus(self, value: float) -> None:
        self.set_bonus(FieldId.BASIC_SPEED, float(value))

    def set_basic_move_bonus(self, value: int) -> None:
        self.set_bonus(FieldId.BASIC_MOVE, value)

    def set_feature_map(self, feature_map: FeatureMap) -> None:
        """Install a new feature map and derive every bonus from it.

        All bonus fields and cost reductions change inside one batch, and
        each affected field is notified at most once, so listeners never see
        bonuses from two different maps.
        """
        with self._lock:

            def install() -> None:
                self._feature_map = feature_map
                for field_id, attribute in BONUS_FIELDS.items():
                    if field_id is FieldId.BASIC_SPEED:
                        setattr(self, attribute, self.float_bonus_for(field_id))
                    else:
                        setattr(self, attribute, self.integer_bonus_for(field_id))
                for field_id in COST_REDUCTION_FIELDS:
                    self._cost_reductions[field_id] = self.cost_reduction_for(field_id)

            self._cascade(INSTALL_KEYS, install, dirty=DirtyFlag.ATTRIBUTE_POINTS, skills=None)
        logger.debug("feature_map_installed", feature_keys=len(feature_map))

    # ------------------------------------------------------------------
    # Skills and spells

    def attribute_value(self, field_id: FieldId) -> int:
        """Current value of an attribute a skill can be based on."""
        match field_id:
            case FieldId.STRENGTH:
                return self.strength
            case FieldId.DEXTERITY:
                return self.dexterity
            case FieldId.INTELLIGENCE:
                return self.intelligence
            case FieldId.HEALTH:
                return self.health
            case FieldId.WILL:
                return self.will
            case FieldId.PERCEPTION:
                return self.perception
        raise KeyError(f"Skills can't be based on {field_id}")

    def _refresh_level(self, trait: Skill | Spell, notification_id: FieldId) -> None:
        level = skill_level(
            self.attribute_value(trait.attribute),
            trait.difficulty,
            trait.points,
            self.skill_bonus_for(trait),
        )
        if level != trait.level:
            trait.level = level
            self._notifier.notify(notification_id, trait)

    def _update_skill_levels(self, attributes: frozenset[FieldId] | None = None) -> None:
        """Recompute cached levels of skills based on ``attributes`` (all if None)."""
        for skill in tuple(self.traits.skills):
            if attributes is None or skill.attribute in attributes:
                self._refresh_level(skill, FieldId.SKILL_LEVEL)
        if attributes is None or FieldId.INTELLIGENCE in attributes:
            for spell in tuple(self.traits.spells):
                self._refresh_level(spell, FieldId.SPELL_LEVEL)

    # ------------------------------------------------------------------
    # Trait structure

    def add_trait(self, trait: Trait, *, carried: bool = True) -> None:
        """Add a trait to its container.

        Raises:
            TypeError: If ``trait`` is not a trait
        """
        with self._lock:
            container = self.traits.list_for(trait, carried)
            self._notifier.start_notify()
            try:
                container.append(trait)
                self._trait_changed(trait)
            finally:
                self._notifier.end_notify()

    def remove_trait(self, trait: Trait) -> bool:
        """Remove a top-level trait.

        Returns:
            True if the trait was found and removed
        """
        with self._lock:
            containers = [self.traits.list_for(trait)]
            if isinstance(trait, Equipment):
                containers.append(self.traits.other_equipment)
            for container in containers:
                for index, item in enumerate(container):
                    if item is trait:
                        self._notifier.start_notify()
                        try:
                            del container[index]
                            self._trait_changed(trait)
                        finally:
                            self._notifier.end_notify()
                        return True
        logger.warning("trait_not_found", trait=getattr(trait, "name", None))
        return False

    def update_trait(self, trait: Trait, **changes: Any) -> None:
        """Change attributes of a trait and refresh whatever depends on it.

        Raises:
            AttributeError: If a change names an attribute the trait lacks
        """
        for name in changes:
            if name == "level" or not hasattr(trait, name):
                raise AttributeError(f"{type(trait).__name__} has no editable attribute {name!r}")
        with self._lock:
            self._notifier.start_notify()
            try:
                for name, value in changes.items():
                    setattr(trait, name, value)
                self._trait_changed(trait)
            finally:
                self._notifier.end_notify()

    def _trait_changed(self, trait: Trait) -> None:
        if isinstance(trait, Advantage):
            self._notifier.mark_dirty(DirtyFlag.ADVANTAGE_POINTS)
            self._notifier.notify(FieldId.TRAIT_ADVANTAGE_CHANGED, trait)
        elif isinstance(trait, Skill):
            self._refresh_level(trait, FieldId.SKILL_LEVEL)
            self._notifier.mark_dirty(DirtyFlag.SKILL_POINTS)
            self._notifier.notify(FieldId.TRAIT_SKILL_CHANGED, trait)
        elif isinstance(trait, Spell):
            self._refresh_level(trait, FieldId.SPELL_LEVEL)
            self._notifier.mark_dirty(DirtyFlag.SPELL_POINTS)
            self._notifier.notify(FieldId.TRAIT_SPELL_CHANGED, trait)
        elif isinstance(trait, Equipment):
            self._notifier.mark_dirty(DirtyFlag.EQUIPMENT)
            self._notifier.notify(FieldId.TRAIT_EQUIPMENT_CHANGED, trait)

    # ------------------------------------------------------------------
    # Aggregates

    def _calculate_attribute_points(self) -> int:
        return sum(self.attribute_cost(field_id) for field_id in ATTRIBUTE_COST_FIELDS)

    def _calculate_advantage_points(self) -> tuple[int, int, int, int]:
        """Split advantage costs into advantages, disadvantages, quirks and race."""
        advantages = disadvantages = quirks = race = 0
        pending = list(self.traits.advantages)
        while pending:
            advantage = pending.pop()
            if advantage.container_type is ContainerType.RACE:
                race += advantage.adjusted_points
            elif advantage.is_container:
                pending.extend(advantage.children)
            else:
                points = advantage.adjusted_points
                if points > 0:
                    advantages += points
                elif points < -1:
                    disadvantages += points
                elif points == -1:
                    quirks += points
        return advantages, disadvantages, quirks, race

    def _update_aggregate(self, attribute: str, field_id: FieldId, value: int | float) -> None:
        if getattr(self, attribute) != value:
            setattr(self, attribute, value)
            self._notifier.notify(field_id, value)

    def _flush_aggregates(self, dirty: DirtyFlag) -> None:
        """Recompute dirty aggregates and notify the ones that changed."""
        unspent = self.unspent_points
        if dirty & DirtyFlag.ATTRIBUTE_POINTS:
            self._update_aggregate(
                "_attribute_points", FieldId.ATTRIBUTE_POINTS, self._calculate_attribute_points()
            )
        if dirty & DirtyFlag.ADVANTAGE_POINTS:
            advantages, disadvantages, quirks, race = self._calculate_advantage_points()
            self._update_aggregate("_advantage_points", FieldId.ADVANTAGE_POINTS, advantages)
            self._update_aggregate("_disadvantage_points", FieldId.DISADVANTAGE_POINTS, disadvantages)
            self._update_aggregate("_quirk_points", FieldId.QUIRK_POINTS, quirks)
            self._update_aggregate("_race_points", FieldId.RACE_POINTS, race)
        if dirty & DirtyFlag.SKILL_POINTS:
            points = sum(skill.points for skill in tuple(self.traits.skills))
            self._update_aggregate("_skill_points", FieldId.SKILL_POINTS, points)
        if dirty & DirtyFlag.SPELL_POINTS:
            points = sum(spell.points for spell in tuple(self.traits.spells))
            self._update_aggregate("_spell_points", FieldId.SPELL_POINTS, points)
        if dirty & DirtyFlag.EQUIPMENT:
            level = self.encumbrance_level
            carried = tuple(self.traits.carried_equipment)
            self._update_aggregate(
                "_weight_carried", FieldId.CARRIED_WEIGHT, sum((item.extended_weight for item in carried), 0.0)
            )
            self._update_aggregate(
                "_wealth_carried", FieldId.CARRIED_WEALTH, sum((item.extended_value for item in carried), 0.0)
            )
            if self.encumbrance_level is not level:
                self._notifier.notify(FieldId.ENCUMBRANCE_LEVEL, self.encumbrance_level)
        if self.unspent_points != unspent:
            self._notifier.notify(FieldId.UNSPENT_POINTS, self.unspent_points)

    def _touch_modified(self) -> None:
        self._last_modified = datetime.now(UTC)
        self._notifier.notify(FieldId.LAST_MODIFIED, self._last_modified)

    def calculate_all(self) -> None:
        """Recompute every skill level and cached aggregate."""
        with self._lock:
            self._notifier.start_notify()
            try:
                self._update_skill_levels()
                self._notifier.mark_dirty(DirtyFlag.ALL)
            finally:
                self._notifier.end_notify()

    # ------------------------------------------------------------------
    # Editing protocol

    def _read(self, key: str) -> Any:
        return self._accessors[str(key)].getter()

    def _cascade(
        self,
        keys: tuple[str, ...],
        apply: Callable[[], None],
        *,
        dirty: DirtyFlag = DirtyFlag.NONE,
        skills: frozenset[FieldId] | None = frozenset(),
    ) -> None:
        """Apply a change and notify each of ``keys`` whose value changed.

        Args:
            keys: Fields to compare before and after, primary first
            apply: Performs the change
            dirty: Aggregates to recompute when the batch closes
            skills: Skill attributes whose skills need new levels (all if None)
        """
        before = [(key, self._read(key)) for key in keys]
        self._notifier.start_notify()
        try:
            apply()
            for key, old in before:
                new = self._read(key)
                if new != old:
                    self._notifier.notify(key, new)
            if skills is None or skills:
                self._update_skill_levels(skills)
            if dirty:
                self._notifier.mark_dirty(dirty)
        finally:
            self._notifier.end_notify()

    def _edit(
        self,
        field_id: FieldId,
        label: str,
        value: Any,
        apply: Callable[[Any], None],
        keys: tuple[str, ...] | None = None,
    ) -> None:
        """Run the setter protocol for a user edit of ``field_id``."""
        with self._lock:
            old = self._read(field_id)
            if old == value:
                return
            dirty = DirtyFlag.ATTRIBUTE_POINTS if field_id in ATTRIBUTE_COST_FIELDS else DirtyFlag.NONE
            self._cascade(
                keys or DEPENDENTS.get(field_id, (field_id,)),
                lambda: apply(value),
                dirty=dirty,
                skills=SKILL_ATTRIBUTES_AFFECTED.get(field_id, frozenset()),
            )
            self._undo.post(label, field_id, old, value)

    # ------------------------------------------------------------------
    # Generic accessor

    def _build_accessors(self) -> dict[str, FieldAccessor]:
        accessors: dict[str, FieldAccessor] = {
            FieldId.STRENGTH: FieldAccessor(lambda: self.strength, self.set_strength),
            FieldId.LIFTING_STRENGTH: FieldAccessor(lambda: self.lifting_strength),
            FieldId.STRIKING_STRENGTH: FieldAccessor(lambda: self.striking_strength),
            FieldId.DEXTERITY: FieldAccessor(lambda: self.dexterity, self.set_dexterity),
            FieldId.INTELLIGENCE: FieldAccessor(lambda: self.intelligence, self.set_intelligence),
            FieldId.HEALTH: FieldAccessor(lambda: self.health, self.set_health),
            FieldId.WILL: FieldAccessor(lambda: self.will, self.set_will),
            FieldId.FRIGHT_CHECK: FieldAccessor(lambda: self.fright_check),
            FieldId.PERCEPTION: FieldAccessor(lambda: self.perception, self.set_perception),
            FieldId.VISION: FieldAccessor(lambda: self.vision),
            FieldId.HEARING: FieldAccessor(lambda: self.hearing),
            FieldId.TOUCH: FieldAccessor(lambda: self.touch),
            FieldId.TASTE_AND_SMELL: FieldAccessor(lambda: self.taste_and_smell),
            FieldId.BASIC_SPEED: FieldAccessor(lambda: self.basic_speed, self.set_basic_speed, float),
            FieldId.BASIC_MOVE: FieldAccessor(lambda: self.basic_move, self.set_basic_move),
            FieldId.DODGE_BONUS: FieldAccessor(lambda: self.dodge_bonus),
            FieldId.PARRY_BONUS: FieldAccessor(lambda: self.parry_bonus),
            FieldId.BLOCK_BONUS: FieldAccessor(lambda: self.block_bonus),
            FieldId.HIT_POINTS: FieldAccessor(lambda: self.hit_points, self.set_hit_points),
            FieldId.CURRENT_HIT_POINTS: FieldAccessor(
                lambda: self.current_hit_points, self.set_current_hit_points, str
            ),
            FieldId.REELING_HIT_POINTS: FieldAccessor(lambda: self.reeling_hit_points),
            FieldId.UNCONSCIOUS_CHECKS_HIT_POINTS: FieldAccessor(lambda: self.unconscious_checks_hit_points),
            FieldId.DEAD_HIT_POINTS: FieldAccessor(lambda: self.dead_hit_points),
            FieldId.FATIGUE_POINTS: FieldAccessor(lambda: self.fatigue_points, self.set_fatigue_points),
            FieldId.CURRENT_FATIGUE_POINTS: FieldAccessor(
                lambda: self.current_fatigue_points, self.set_current_fatigue_points, str
            ),
            FieldId.TIRED_FATIGUE_POINTS: FieldAccessor(lambda: self.tired_fatigue_points),
            FieldId.UNCONSCIOUS_CHECKS_FATIGUE_POINTS: FieldAccessor(
                lambda: self.unconscious_checks_fatigue_points
            ),
            FieldId.UNCONSCIOUS_FATIGUE_POINTS: FieldAccessor(lambda: self.unconscious_fatigue_points),
            FieldId.BASIC_LIFT: FieldAccessor(lambda: self.basic_lift, value_type=float),
            FieldId.BASIC_THRUST: FieldAccessor(lambda: self.basic_thrust, value_type=Dice),
            FieldId.BASIC_SWING: FieldAccessor(lambda: self.basic_swing, value_type=Dice),
            FieldId.TOTAL_POINTS: FieldAccessor(lambda: self.total_points, self.set_total_points),
            FieldId.UNSPENT_POINTS: FieldAccessor(lambda: self.unspent_points, self.set_unspent_points),
            FieldId.ATTRIBUTE_POINTS: FieldAccessor(lambda: self.attribute_points),
            FieldId.ADVANTAGE_POINTS: FieldAccessor(lambda: self.advantage_points),
            FieldId.DISADVANTAGE_POINTS: FieldAccessor(lambda: self.disadvantage_points),
            FieldId.QUIRK_POINTS: FieldAccessor(lambda: self.quirk_points),
            FieldId.SKILL_POINTS: FieldAccessor(lambda: self.skill_points),
            FieldId.SPELL_POINTS: FieldAccessor(lambda: self.spell_points),
            FieldId.RACE_POINTS: FieldAccessor(lambda: self.race_points),
            FieldId.CARRIED_WEIGHT: FieldAccessor(lambda: self.weight_carried, value_type=float),
            FieldId.CARRIED_WEALTH: FieldAccessor(lambda: self.wealth_carried, value_type=float),
            FieldId.ENCUMBRANCE_LEVEL: FieldAccessor(lambda: self.encumbrance_level, value_type=Encumbrance),
            FieldId.LAST_MODIFIED: FieldAccessor(lambda: self.last_modified, value_type=datetime),
            FieldId.CREATED_ON: FieldAccessor(lambda: self.created_on, value_type=datetime),
        }
        for check, field_id in enumerate(DEATH_CHECKS, start=1):
            accessors[field_id] = FieldAccessor(lambda check=check: self.death_check_hit_points(check))
        for field_id in LIFT_MULTIPLIERS:
            accessors[field_id] = FieldAccessor(lambda field_id=field_id: self.lift(field_id), value_type=float)
        for level in Encumbrance:
            accessors[move_key(level)] = FieldAccessor(lambda level=level: self.move(level))
            accessors[dodge_key(level)] = FieldAccessor(lambda level=level: self.dodge(level))
            accessors[maximum_carry_key(level)] = FieldAccessor(
                lambda level=level: self.maximum_carry(level), value_type=float
            )
        for field_id in ATTRIBUTE_COST_FIELDS:
            accessors[points_cost_key(field_id)] = FieldAccessor(
                lambda field_id=field_id: self.attribute_cost(field_id)
            )
        for field_id in COST_REDUCTION_FIELDS:
            accessors[cost_reduction_key(field_id)] = FieldAccessor(
                lambda field_id=field_id: self.cost_reduction(field_id),
                lambda value, field_id=field_id: self.set_cost_reduction(field_id, value),
            )
        for field_id in BONUS_FIELDS:
            accessors[bonus_key(field_id)] = FieldAccessor(lambda field_id=field_id: self.bonus(field_id))
        return {str(key): accessor for key, accessor in accessors.items()}

    @property
    def field_ids(self) -> tuple[str, ...]:
        """Every key the generic accessor understands."""
        return tuple(self._accessors)

    def get_value_for_id(self, key: str) -> Any:
        """Read any field by key.

        Unknown keys are logged and return None, since callers try keys
        speculatively.
        """
        accessor = self._accessors.get(str(key))
        if accessor is None:
            logger.warning("unknown_field_id", field_id=str(key))
            return None
        with self._lock:
            return accessor.getter()

    def set_value_for_id(self, key: str, value: Any) -> None:
        """Write any writable field by key.

        Unknown and read-only keys are logged and ignored.

        Raises:
            TypeError: If ``value`` has the wrong type for the field
        """
        accessor = self._accessors.get(str(key))
        if accessor is None:
            logger.warning("unknown_field_id", field_id=str(key))
            return
        if accessor.setter is None:
            logger.warning("read_only_field_id", field_id=str(key))
            return
        _check_value_type(str(key), value, accessor.value_type)
        accessor.setter(value)

    # ------------------------------------------------------------------
    # Observers

    def add_target(self, listener: Listener, *keys: str) -> None:
        """Register ``listener(character, field_id, value)`` for ids or dot-terminated prefixes."""
        with self._lock:
            self._notifier.add_target(listener, *keys)

    def remove_target(self, listener: Listener) -> None:
        with self._lock:
            self._notifier.remove_target(listener)

    def notify(self, field_id: str, value: Any) -> None:
        with self._lock:
            self._notifier.notify(field_id, value)

    def notify_single(self, field_id: str, value: Any) -> None:
        with self._lock:
            self._notifier.notify_single(field_id, value)

    def start_notify(self) -> None:
        """Open a batch. Holds the store lock until the matching end_notify.

        The feature aggregator cannot install a new feature map while the
        batch is open, so do not wait for it from inside a batch.
        """
        self._lock.acquire()
        self._notifier.start_notify()

    def end_notify(self) -> None:
        """Close a batch opened by start_notify on this thread."""
        try:
            self._notifier.end_notify()
        finally:
            self._lock.release()

    @property
    def notification_depth(self) -> int:
        return self._notifier.depth

    def holds_open_batch(self) -> bool:
        """True if the calling thread has a notification batch open."""
        # Acquiring fails only when another thread holds the lock.
        if not self._lock.acquire(blocking=False):
            return False
        try:
            return self._notifier.depth > 0
        finally:
            self._lock.release()

    # ------------------------------------------------------------------
    # Undo

    @property
    def undo_recorder(self) -> UndoRecorder:
        return self._undo

    def undo(self) -> None:
        with self._lock:
            self._undo.undo()

    def redo(self) -> None:
        with self._lock:
            self._undo.redo()

    # ------------------------------------------------------------------
    # Persistence and lifecycle

    def to_snapshot(self) -> CharacterSnapshot:
        """Capture base values for persistence. Bonuses and aggregates are left out."""
        with self._lock:
            return CharacterSnapshot(
                strength=self._st,
                dexterity=self._dx,
                intelligence=self._iq,
                health=self._ht,
                will_base=self._will_base,
                perception_base=self._per_base,
                speed_base=self._speed_base,
                move_base=self._move_base,
                hit_points_base=self._hp_base,
                fatigue_points_base=self._fp_base,
                current_hit_points=self._current_hp,
                current_fatigue_points=self._current_fp,
                cost_reductions={
                    field_id.value: percentage
                    for field_id, percentage in self._cost_reductions.items()
                    if percentage
                },
                total_points=self._total_points,
                created_on=self._created_on,
            )

    @classmethod
    def from_snapshot(
        cls,
        snapshot: CharacterSnapshot,
        rules: RuleSet | None = None,
        traits: TraitLists | None = None,
        *,
        undo_levels: int = 100,
    ) -> "Character":
        """Restore a character and derive everything else from its traits.

        The feature map is built synchronously, installed, and followed by a
        full recompute. The installed map decides the final cost reductions.
        """
        character = cls(
            rules,
            traits,
            total_points=snapshot.total_points,
            undo_levels=undo_levels,
            created_on=snapshot.created_on,
        )
        character._st = snapshot.strength
        character._dx = snapshot.dexterity
        character._iq = snapshot.intelligence
        character._ht = snapshot.health
        character._will_base = snapshot.will_base
        character._per_base = snapshot.perception_base
        character._speed_base = snapshot.speed_base
        character._move_base = snapshot.move_base
        character._hp_base = snapshot.hit_points_base
        character._fp_base = snapshot.fatigue_points_base
        character._current_hp = snapshot.current_hit_points
        character._current_fp = snapshot.current_fatigue_points
        for key, percentage in snapshot.cost_reductions.items():
            character._cost_reductions[FieldId(key)] = percentage

        character.set_feature_map(build_feature_map(character.traits))
        character.calculate_all()
        character._undo.clear()
        logger.info(
            "character_restored",
            total_points=character.total_points,
            unspent_points=character.unspent_points,
        )
        return character

    def dispose(self) -> None:
        """Detach every listener. Safe to call more than once."""
        with self._lock:
            self._notifier.reset()
