"""Dice expressions for basic thrust and swing damage."""

from dataclasses import dataclass


@dataclass(frozen=True)
class Dice:
    """A count of six-sided dice plus a flat modifier, e.g. ``2d-1``.

    Equality is structural, so two rolls of ``1d+2`` computed separately
    compare equal.
    """

    count: int
    modifier: int = 0
    sides: int = 6

    def __str__(self) -> str:
        sides = "" if self.sides == 6 else str(self.sides)
        if self.modifier > 0:
            return f"{self.count}d{sides}+{self.modifier}"
        if self.modifier < 0:
            return f"{self.count}d{sides}{self.modifier}"
        return f"{self.count}d{sides}"

    def add_modifier(self, amount: int) -> "Dice":
        """Return a copy with ``amount`` added to the flat modifier."""
        return Dice(self.count, self.modifier + amount, self.sides)
