"""Persistable character state.

A snapshot carries only base values, cost reductions, the free-text pool
values and total points. Bonuses and cached aggregates are always derived
again after loading.
"""

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sheetcalc.engine.fields import FieldId

COST_REDUCTION_FIELDS = (
    FieldId.STRENGTH,
    FieldId.DEXTERITY,
    FieldId.INTELLIGENCE,
    FieldId.HEALTH,
)


class CharacterSnapshot(BaseModel):
    """Base values of a character, as handed to an external serializer."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    strength: int = Field(default=10, description="Base strength, excluding bonuses")
    dexterity: int = Field(default=10, description="Base dexterity, excluding bonuses")
    intelligence: int = Field(default=10, description="Base IQ, excluding bonuses")
    health: int = Field(default=10, description="Base health, excluding bonuses")
    will_base: int = Field(default=0, description="Will adjustment over its baseline")
    perception_base: int = Field(default=0, description="Perception adjustment over its baseline")
    speed_base: float = Field(default=0.0, description="Basic speed adjustment")
    move_base: int = Field(default=0, description="Basic move adjustment")
    hit_points_base: int = Field(default=0, description="Hit point adjustment over ST")
    fatigue_points_base: int = Field(default=0, description="Fatigue point adjustment over HT")
    current_hit_points: str = Field(default="", description="Free-text current hit points")
    current_fatigue_points: str = Field(default="", description="Free-text current fatigue points")
    cost_reductions: dict[str, int] = Field(
        default_factory=dict, description="Cost reduction percentage per attribute id"
    )
    total_points: int = Field(default=150, description="Total character points")
    created_on: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("cost_reductions")
    @classmethod
    def validate_cost_reductions(cls, value: dict[str, int]) -> dict[str, int]:
        """Only primary attributes take cost reductions, and never negative ones."""
        allowed = {field.value for field in COST_REDUCTION_FIELDS}
        for key, percentage in value.items():
            if key not in allowed:
                raise ValueError(f"Cost reductions apply only to {sorted(allowed)}, got {key!r}")
            if percentage < 0:
                raise ValueError(f"Cost reduction for {key} must not be negative")
        return value

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

    @classmethod
    def from_json(cls, data: str | bytes) -> "CharacterSnapshot":
        """Parse a snapshot from JSON.

        Raises:
            pydantic.ValidationError: If the data is malformed
        """
        return cls.model_validate_json(data)
