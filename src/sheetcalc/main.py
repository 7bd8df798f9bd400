"""Command-line entry point for sheetcalc."""

import argparse
import logging
import sys
from pathlib import Path

import structlog

from sheetcalc.config import Settings, get_settings
from sheetcalc.engine.character import Character
from sheetcalc.engine.fields import Encumbrance, FieldId
from sheetcalc.engine.rules import RuleSet
from sheetcalc.engine.session import CharacterSession
from sheetcalc.engine.snapshot import CharacterSnapshot
from sheetcalc.traits.loader import load_traits_from_directory, load_traits_from_file
from sheetcalc.traits.models import TraitLists

logger = structlog.get_logger(__name__)


def configure_logging(settings: Settings) -> None:
    """
    Configure structlog from settings.

    Args:
        settings: Application settings supplying log level and format
    """
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    if settings.log_format.lower() == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sheetcalc", description="Calculate derived values for a character"
    )
    parser.add_argument(
        "--traits", type=Path, help="Trait YAML file, or a directory of them"
    )
    parser.add_argument("--snapshot", type=Path, help="Character snapshot JSON to load")
    parser.add_argument("--write-snapshot", type=Path, help="Write the snapshot JSON here")
    return parser


def load_traits(path: Path | None) -> TraitLists:
    if path is None:
        return TraitLists()
    if path.is_dir():
        return load_traits_from_directory(path)
    return load_traits_from_file(path)


def format_summary(character: Character) -> str:
    """
    Render the main derived values as text.

    Args:
        character: Character to summarize

    Returns:
        Multi-line summary
    """
    units = character.rules.weight_units.value
    lines = [
        f"ST {character.strength}  DX {character.dexterity}  "
        f"IQ {character.intelligence}  HT {character.health}",
        f"HP {character.hit_points}  FP {character.fatigue_points}  "
        f"Will {character.will}  Per {character.perception}",
        f"Basic Speed {character.basic_speed:g}  Basic Move {character.basic_move}",
        f"Thrust {character.basic_thrust}  Swing {character.basic_swing}",
        f"Basic Lift {character.basic_lift:g} {units}",
        "",
        "Encumbrance      Max Load  Move  Dodge",
    ]
    current = character.encumbrance_level
    for level in Encumbrance:
        marker = "*" if level is current else " "
        lines.append(
            f"{marker}{level.title:<15} {character.maximum_carry(level):>8g}  "
            f"{character.move(level):>4}  {character.dodge(level):>5}"
        )
    lines.append("")
    for label, field_id in (
        ("Attributes", FieldId.ATTRIBUTE_POINTS),
        ("Advantages", FieldId.ADVANTAGE_POINTS),
        ("Disadvantages", FieldId.DISADVANTAGE_POINTS),
        ("Quirks", FieldId.QUIRK_POINTS),
        ("Skills", FieldId.SKILL_POINTS),
        ("Spells", FieldId.SPELL_POINTS),
        ("Race", FieldId.RACE_POINTS),
        ("Unspent", FieldId.UNSPENT_POINTS),
        ("Total", FieldId.TOTAL_POINTS),
    ):
        lines.append(f"{label:<14} {character.get_value_for_id(field_id):>5}")
    return "\n".join(lines)


def main(argv: list[str] | None = None) -> int:
    """
    Load a character, let its features settle and print a summary.

    Args:
        argv: Command-line arguments; sys.argv if None

    Returns:
        Process exit code
    """
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings)

    rules = RuleSet.from_settings(settings)
    traits = load_traits(args.traits)
    if args.snapshot is not None:
        snapshot = CharacterSnapshot.from_json(args.snapshot.read_text(encoding="utf-8"))
    else:
        snapshot = CharacterSnapshot(total_points=settings.initial_points)

    character = Character.from_snapshot(
        snapshot, rules, traits, undo_levels=settings.undo_levels
    )
    with CharacterSession(character, settings) as session:
        if not session.wait_for_processing_to_finish():
            logger.warning("features_not_settled", timeout=settings.worker_finish_timeout)
        print(format_summary(character))
        if args.write_snapshot is not None:
            args.write_snapshot.write_text(session.snapshot().to_json(), encoding="utf-8")
            logger.info("snapshot_written", path=str(args.write_snapshot))
    return 0


def run() -> None:
    """
    Synchronous entry point for the command line.
    """
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        logger.info("stopped_by_user")
    except Exception as e:
        logger.error(
            "sheetcalc_fatal_error",
            error=str(e),
            exc_info=True,
        )
        sys.exit(1)


if __name__ == "__main__":
    run()
