"""Traits, the features they carry, and feature aggregation."""

from .aggregator import AggregatorState, FeatureAggregator, build_feature_map
from .features import (
    Bonus,
    CostReduction,
    FeatureMap,
    IntegerCriteria,
    LeveledAmount,
    StringCriteria,
    WeaponBonus,
)
from .loader import TraitLoadError, TraitValidationError, load_traits_from_directory, load_traits_from_file
from .models import (
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

__all__ = [
    "Advantage",
    "AggregatorState",
    "Bonus",
    "ContainerType",
    "CostReduction",
    "Difficulty",
    "Equipment",
    "EquipmentModifier",
    "FeatureAggregator",
    "FeatureMap",
    "IntegerCriteria",
    "LeveledAmount",
    "Modifier",
    "Skill",
    "Spell",
    "StringCriteria",
    "TraitLists",
    "TraitLoadError",
    "TraitValidationError",
    "WeaponBonus",
    "build_feature_map",
    "load_traits_from_directory",
    "load_traits_from_file",
]
