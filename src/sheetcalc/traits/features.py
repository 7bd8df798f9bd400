"""Feature definitions contributed by traits.

A feature is one rules effect carried by a trait: a numeric bonus to a
field, a percentage reduction of an attribute's point cost, or a bonus that
only applies to weapons used with matching skills. Features are immutable;
the aggregator scales a bonus by its owner's level by making a copy.
"""

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from types import MappingProxyType


@dataclass(frozen=True)
class LeveledAmount:
    """A bonus amount that can scale with its owner's level.

    Attributes:
        amount: Base amount
        per_level: Whether the amount is multiplied by ``level``
        level: Owner level, filled in during aggregation
    """

    amount: float = 0
    per_level: bool = False
    level: int = 0

    @property
    def adjusted_amount(self) -> float:
        """Amount after level scaling."""
        if self.per_level:
            return self.amount * self.level
        return self.amount

    @property
    def integer_adjusted_amount(self) -> int:
        """Adjusted amount truncated toward zero."""
        return int(self.adjusted_amount)

    def with_level(self, level: int) -> "LeveledAmount":
        return replace(self, level=level)

    def __str__(self) -> str:
        text = f"{self.amount:+g}"
        return f"{text} per level" if self.per_level else text


class StringCompare(StrEnum):
    """How a string criteria compares against a candidate."""

    ANY = "any"
    IS = "is"
    IS_NOT = "is_not"
    CONTAINS = "contains"
    DOES_NOT_CONTAIN = "does_not_contain"
    STARTS_WITH = "starts_with"


@dataclass(frozen=True)
class StringCriteria:
    """Case-insensitive string matcher."""

    compare: StringCompare = StringCompare.ANY
    qualifier: str = ""

    def matches(self, value: str) -> bool:
        value = (value or "").lower()
        qualifier = self.qualifier.lower()
        match self.compare:
            case StringCompare.ANY:
                return True
            case StringCompare.IS:
                return value == qualifier
            case StringCompare.IS_NOT:
                return value != qualifier
            case StringCompare.CONTAINS:
                return qualifier in value
            case StringCompare.DOES_NOT_CONTAIN:
                return qualifier not in value
            case StringCompare.STARTS_WITH:
                return value.startswith(qualifier)
        return False


class NumericCompare(StrEnum):
    """How an integer criteria compares against a candidate."""

    AT_LEAST = "at_least"
    AT_MOST = "at_most"
    EXACTLY = "exactly"


@dataclass(frozen=True)
class IntegerCriteria:
    """Integer matcher, e.g. 'relative skill level at least 0'."""

    compare: NumericCompare = NumericCompare.AT_LEAST
    qualifier: int = 0

    def matches(self, value: int) -> bool:
        match self.compare:
            case NumericCompare.AT_LEAST:
                return value >= self.qualifier
            case NumericCompare.AT_MOST:
                return value <= self.qualifier
            case NumericCompare.EXACTLY:
                return value == self.qualifier
        return False


@dataclass(frozen=True)
class Feature:
    """Base for all features. Keys are stored lowercase."""

    key: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "key", str(self.key).lower())


@dataclass(frozen=True)
class Bonus(Feature):
    """A numeric bonus to the field named by ``key``."""

    amount: LeveledAmount = field(default_factory=LeveledAmount)

    def with_level(self, level: int) -> "Bonus":
        """Copy of this bonus with its amount scaled to ``level``."""
        return replace(self, amount=self.amount.with_level(level))


@dataclass(frozen=True)
class CostReduction(Feature):
    """Percentage reduction of the point cost of the attribute named by ``key``."""

    percentage: int = 0


@dataclass(frozen=True)
class WeaponBonus(Bonus):
    """A damage bonus that applies only to weapons used with matching skills.

    Weapon bonuses never count toward generic field bonuses; they are
    resolved against the best relative skill level of skills matching the
    name and specialization criteria.
    """

    name: StringCriteria = field(default_factory=StringCriteria)
    specialization: StringCriteria = field(default_factory=StringCriteria)
    level_criteria: IntegerCriteria = field(default_factory=IntegerCriteria)

    def applies_to(self, name: str, specialization: str, relative_level: int) -> bool:
        return (
            self.name.matches(name)
            and self.specialization.matches(specialization)
            and self.level_criteria.matches(relative_level)
        )


class FeatureMap(Mapping[str, tuple[Feature, ...]]):
    """Immutable mapping from lookup key to the features active for it.

    The map is built once and replaced wholesale; there are no mutators.
    """

    __slots__ = ("_features",)

    def __init__(self, features: Mapping[str, Iterable[Feature]] | None = None) -> None:
        frozen = {str(key).lower(): tuple(items) for key, items in (features or {}).items()}
        self._features = MappingProxyType(frozen)

    @classmethod
    def from_features(cls, features: Iterable[Feature]) -> "FeatureMap":
        """Group features by key, preserving their order."""
        grouped: dict[str, list[Feature]] = {}
        for feature in features:
            grouped.setdefault(feature.key, []).append(feature)
        return cls(grouped)

    def __getitem__(self, key: str) -> tuple[Feature, ...]:
        return self._features[str(key).lower()]

    def __iter__(self) -> Iterator[str]:
        return iter(self._features)

    def __len__(self) -> int:
        return len(self._features)

    def __repr__(self) -> str:
        return f"FeatureMap({dict(self._features)!r})"

    def features_for(self, key: str) -> tuple[Feature, ...]:
        """Features registered under ``key``, or an empty tuple."""
        return self._features.get(str(key).lower(), ())


EMPTY_FEATURE_MAP = FeatureMap()
