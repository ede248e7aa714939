"""
Bulk load of the library catalog from a spreadsheet (.xlsx or .csv).

One row per node; the level comes from the shape of the code. Rows are
applied parents-first, existing active codes are updated in place and new
codes are inserted under their parent. Bad rows are skipped and reported,
never fatal. The caller owns the transaction.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import numpy as np
import pandas as pd
from sqlalchemy.orm import Session

from costlib.utils.validators import clean_str

from . import codes
from .codes import Level
from .errors import InvalidFormat, NotFound, ValidationError
from .library import (
    create_assembly,
    create_division,
    create_item,
    create_section,
    get_node,
    parse_wastage,
)

logger = logging.getLogger(__name__)

COLUMNS = [
    "code",
    "name",
    "description",
    "unit",
    "specifications",
    "wastage_percentage",
    "productivity_notes",
]

# Header (lowercased, trimmed) -> column
COLUMN_ALIASES = {
    "code": "code",
    "cost code": "code",
    "name": "name",
    "description": "description",
    "unit": "unit",
    "uom": "unit",
    "specifications": "specifications",
    "specs": "specifications",
    "wastage": "wastage_percentage",
    "wastage %": "wastage_percentage",
    "wastage_percentage": "wastage_percentage",
    "productivity notes": "productivity_notes",
    "productivity_notes": "productivity_notes",
}


@dataclass
class ImportResult:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def skip(self, row_no: int, reason: str) -> None:
        self.skipped += 1
        self.errors.append(f"row {row_no}: {reason}")
        logger.warning("library import skipped row %s: %s", row_no, reason)

    def to_dict(self) -> dict:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


def normalize_frame(df: pd.DataFrame, *, max_rows: Optional[int] = None) -> pd.DataFrame:
    df = df.rename(columns=lambda c: COLUMN_ALIASES.get(str(c).strip().lower(), str(c).strip().lower()))
    missing = [c for c in ("code", "name") if c not in df.columns]
    if missing:
        raise ValidationError(f"Library sheet is missing required column(s): {', '.join(missing)}")
    if max_rows is not None and len(df) > max_rows:
        raise ValidationError(f"Library sheet has {len(df)} rows; the limit is {max_rows}")

    # Optional columns may be absent from a sheet
    for col in COLUMNS:
        if col not in df.columns:
            df[col] = None
    df = df[COLUMNS]
    # Row numbers as a spreadsheet user sees them (header is row 1)
    df.index = range(2, len(df) + 2)
    return df.replace({np.nan: None})


def load_library_frame(path, *, max_rows: Optional[int] = None) -> pd.DataFrame:
    path = Path(path)
    suffix = path.suffix.lower()
    # Read as text so codes like "02" keep their leading zero
    if suffix in (".xlsx", ".xlsm"):
        df = pd.read_excel(path, dtype=str)
    elif suffix == ".csv":
        df = pd.read_csv(path, dtype=str)
    else:
        raise ValidationError(f"Unsupported library file type: {suffix or path.name}")
    logger.info("loaded %d rows from %s", len(df), path.name)
    return normalize_frame(df, max_rows=max_rows)


def _update(node, level: Level, row: dict) -> None:
    # Validate the whole row before touching the node; a skipped row leaves it as it was
    name = clean_str(row.get("name"))
    if not name:
        raise ValidationError(f"{level.label.capitalize()} name is required")
    changes = {"name": name}
    description = clean_str(row.get("description"), max_len=2000)
    if description is not None:
        changes["description"] = description
    if level == Level.ITEM:
        unit = clean_str(row.get("unit"), max_len=32)
        if unit:
            changes["unit"] = unit
        if row.get("wastage_percentage") is not None:
            changes["wastage_percentage"] = parse_wastage(row.get("wastage_percentage"))
        for col in ("specifications", "productivity_notes"):
            value = clean_str(row.get(col), max_len=4000)
            if value is not None:
                changes[col] = value

    for attr, value in changes.items():
        setattr(node, attr, value)


def _insert(session: Session, org_id: int, level: Level, code: str, parent, row: dict) -> None:
    common = dict(
        name=row.get("name"),
        description=row.get("description"),
        code=code,
    )
    if level == Level.DIVISION:
        create_division(session, org_id, **common)
    elif level == Level.SECTION:
        create_section(session, org_id, division_id=parent.id, **common)
    elif level == Level.ASSEMBLY:
        create_assembly(session, org_id, section_id=parent.id, **common)
    else:
        create_item(
            session,
            org_id,
            assembly_id=parent.id,
            unit=row.get("unit"),
            specifications=row.get("specifications"),
            wastage_percentage=row.get("wastage_percentage"),
            productivity_notes=row.get("productivity_notes"),
            **common,
        )


def import_library_frame(session: Session, org_id: int, df: pd.DataFrame) -> ImportResult:
    result = ImportResult()

    pending = []
    for row_no, row in zip(df.index, df.to_dict("records")):
        code = clean_str(row.get("code"), max_len=16)
        level = codes.get_code_level(code)
        if not level:
            result.skip(row_no, f"invalid code {code!r}")
            continue
        pending.append((codes.sort_key(code), level, row_no, code, row))
    # Parents sort before their children ("02" < "02.10" < "02.10.10")
    pending.sort(key=lambda p: (p[0], p[1], p[2]))

    for _, level, row_no, code, row in pending:
        lvl = Level(level)
        if not clean_str(row.get("name")):
            result.skip(row_no, f"{code}: name is required")
            continue
        try:
            existing = get_node(session, org_id, lvl, code=code)
        except NotFound:
            existing = None
        try:
            if existing is not None:
                _update(existing, lvl, row)
                result.updated += 1
                continue
            parent = None
            if lvl > Level.DIVISION:
                parent_code = codes.get_parent_code(code)
                try:
                    parent = get_node(session, org_id, Level(lvl - 1), code=parent_code)
                except NotFound:
                    result.skip(row_no, f"{code}: parent {parent_code} not found")
                    continue
            _insert(session, org_id, lvl, code, parent, row)
            result.inserted += 1
        except (ValidationError, InvalidFormat) as e:
            result.skip(row_no, f"{code}: {e}")

    session.flush()
    logger.info(
        "library import org=%s inserted=%d updated=%d skipped=%d",
        org_id, result.inserted, result.updated, result.skipped,
    )
    return result
