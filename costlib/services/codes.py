"""
Hierarchical library codes: allocation, validation and ordering.

Codes are dotted groups of two digits, one group per level:

    Division  "02"
    Section   "02.10"
    Assembly  "02.10.10"
    Item      "02.10.10.01"

Everything here is pure. Callers pass in the sibling codes they read from
storage and persist the result themselves; a generated code is a proposal,
not a reservation.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable, List, Optional

from .errors import CodeOverflow, InvalidParentFormat, UnsupportedLevel

logger = logging.getLogger(__name__)


class Level(IntEnum):
    DIVISION = 1
    SECTION = 2
    ASSEMBLY = 3
    ITEM = 4

    @property
    def label(self) -> str:
        return self.name.lower()


# Numbering step per level; the first sibling gets the step value itself.
STEPS = {
    Level.DIVISION: 1,
    Level.SECTION: 10,
    Level.ASSEMBLY: 10,
    Level.ITEM: 1,
}

MAX_SEGMENT = 99

_PATTERNS = {
    level: re.compile(r"[0-9]{2}(?:\.[0-9]{2}){%d}" % (int(level) - 1))
    for level in Level
}

# Human-readable shape for error messages, e.g. "XX.XX (e.g. 02.10)"
PATTERN_HINTS = {
    Level.DIVISION: "XX (e.g. 02)",
    Level.SECTION: "XX.XX (e.g. 02.10)",
    Level.ASSEMBLY: "XX.XX.XX (e.g. 02.10.10)",
    Level.ITEM: "XX.XX.XX.XX (e.g. 02.10.10.01)",
}


@dataclass(frozen=True)
class SiblingCode:
    parent_prefix: str
    suffix: int


def coerce_level(value) -> Level:
    """Accept 1..4 as int or digit string; anything else is UnsupportedLevel."""
    if isinstance(value, bool):
        raise UnsupportedLevel("Level must be between 1 and 4")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    try:
        return Level(value)
    except (TypeError, ValueError):
        raise UnsupportedLevel("Level must be between 1 and 4") from None


def validate_code(code: Optional[str], level) -> bool:
    if not isinstance(code, str):
        return False
    try:
        lvl = Level(level)
    except (TypeError, ValueError):
        return False
    return bool(_PATTERNS[lvl].fullmatch(code))


def get_code_level(code: Optional[str]) -> int:
    """1..4 for a well-formed code, 0 otherwise."""
    if not isinstance(code, str):
        return 0
    for level in Level:
        if _PATTERNS[level].fullmatch(code):
            return int(level)
    return 0


def get_parent_code(code: str) -> str:
    parts = code.split(".")
    if len(parts) > 1:
        return ".".join(parts[:-1])
    return ""


def validate_hierarchy(child_code: str, parent_code: str) -> bool:
    child = (child_code or "").strip()
    parent = (parent_code or "").strip()
    if not parent or not child.startswith(parent + "."):
        return False
    child_depth = len(child.split("."))
    if child_depth != len(parent.split(".")) + 1:
        return False
    return validate_code(child, child_depth)


def sort_key(code: str) -> int:
    """
    Composite ordering integer: segment i (0-based, up to 4) contributes
    int(segment) * 100 ** (3 - i). "02" -> 2000000, "02.10.10.01" -> 2101001.
    """
    total = 0
    for idx, part in enumerate(code.split(".")[:4]):
        total += int(part) * 100 ** (3 - idx)
    return total


def check_parent_code(level, parent_code: Optional[str]) -> Optional[str]:
    """
    Return the parent code to allocate under: None for divisions (any parent
    is ignored), otherwise ``parent_code`` if it has the shape of the level
    above. Raises InvalidParentFormat otherwise.
    """
    lvl = coerce_level(level)
    if lvl == Level.DIVISION:
        if parent_code:
            logger.debug("ignoring parent code %r for a division", parent_code)
        return None
    parent_level = Level(lvl - 1)
    if not validate_code(parent_code, parent_level):
        raise InvalidParentFormat(
            f"Invalid {parent_level.label} code format: {parent_code!r}. "
            f"Must be {PATTERN_HINTS[parent_level]}"
        )
    return parent_code


def parse_sibling_codes(codes: Iterable[str], parent_code: Optional[str], level) -> List[SiblingCode]:
    """
    Keep only codes that are well-formed children of ``parent_code`` at
    ``level`` (or well-formed divisions at level 1). Anything else is
    dropped with a debug log.
    """
    lvl = coerce_level(level)
    prefix = "" if lvl == Level.DIVISION else f"{parent_code}."
    parsed: List[SiblingCode] = []
    for code in codes:
        if not validate_code(code, lvl) or not code.startswith(prefix):
            logger.debug("skipping sibling code %r: not a level-%d child of %r", code, lvl, parent_code or "")
            continue
        parsed.append(SiblingCode(parent_prefix=get_parent_code(code), suffix=int(code.rsplit(".", 1)[-1])))
    return parsed


def next_code(level, parent_code: Optional[str], sibling_codes: Iterable[str]) -> str:
    """
    Propose the next code under ``parent_code`` given the codes currently held
    by active siblings.

    Raises InvalidParentFormat when the parent does not match the level above,
    CodeOverflow when the next segment would exceed 99.
    """
    lvl = coerce_level(level)
    parent_code = check_parent_code(lvl, parent_code)

    siblings = parse_sibling_codes(sibling_codes, parent_code, lvl)
    highest = max((s.suffix for s in siblings), default=0)
    step = STEPS[lvl]
    value = step if highest == 0 else highest + step
    if value > MAX_SEGMENT:
        where = f"under {parent_code}" if parent_code else "at division level"
        raise CodeOverflow(f"No {lvl.label} codes left {where} (highest in use: {highest:02d})")

    segment = f"{value:02d}"
    code = segment if parent_code is None else f"{parent_code}.{segment}"
    logger.debug("allocated %s code %s (highest sibling %d, step %d)", lvl.label, code, highest, step)
    return code
