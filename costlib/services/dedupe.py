"""
Duplicate reconciliation for the library catalog.

Rows at the same level, under the same parent, with the same name are
duplicates. The earliest-created row (lowest id on ties) survives; the
others hand their children over and are hard-deleted. Children are moved
first, so nothing is ever left pointing at a deleted row, and the whole run
is one transaction.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.orm import Session

from . import codes
from .codes import Level
from .library import LEVEL_MODELS, PARENT_FK, PARENT_REL, sibling_codes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DuplicateGroup:
    level: Level
    parent_id: Optional[int]
    name: str
    canonical_id: int
    duplicate_ids: List[int]


@dataclass
class DedupeReport:
    level: Level
    groups: int = 0
    removed: int = 0
    reassigned: int = 0
    recoded: int = 0
    removed_codes: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "level": self.level.label,
            "groups": self.groups,
            "removed": self.removed,
            "reassigned": self.reassigned,
            "recoded": self.recoded,
            "removed_codes": list(self.removed_codes),
        }


def find_duplicate_groups(session: Session, org_id: int, level) -> List[DuplicateGroup]:
    lvl = codes.coerce_level(level)
    model = LEVEL_MODELS[lvl]
    fk = PARENT_FK.get(lvl)
    rows = (
        session.query(model)
        .filter(model.org_id == org_id, model.is_active.is_(True))
        .order_by(model.created_at, model.id)
        .all()
    )
    buckets = {}
    for row in rows:
        key = (getattr(row, fk) if fk else None, row.name)
        buckets.setdefault(key, []).append(row)

    groups = []
    for (parent_id, name), members in buckets.items():
        if len(members) < 2:
            continue
        groups.append(
            DuplicateGroup(
                level=lvl,
                parent_id=parent_id,
                name=name,
                canonical_id=members[0].id,
                duplicate_ids=[m.id for m in members[1:]],
            )
        )
    return groups


def _recode_subtree(session: Session, org_id: int, level: Level, node, new_code: str) -> int:
    """Give ``node`` a new code and rewrite the prefix of every descendant. Returns rows changed."""
    old_code = node.code
    node.code = new_code
    node.sort_order = codes.sort_key(new_code)
    changed = 1
    current = [node.id]
    for deeper in range(level + 1, Level.ITEM + 1):
        deeper = Level(deeper)
        if not current:
            break
        model = LEVEL_MODELS[deeper]
        fk = getattr(model, PARENT_FK[deeper])
        rows = session.query(model).filter(model.org_id == org_id, fk.in_(current)).all()
        for row in rows:
            if row.code.startswith(old_code + "."):
                row.code = new_code + row.code[len(old_code):]
                row.sort_order = codes.sort_key(row.code)
                changed += 1
        current = [r.id for r in rows]
    return changed


def _merge_group(session: Session, org_id: int, group: DuplicateGroup, report: DedupeReport) -> None:
    model = LEVEL_MODELS[group.level]
    canonical = session.get(model, group.canonical_id)

    if group.level < Level.ITEM:
        child_level = Level(group.level + 1)
        child_model = LEVEL_MODELS[child_level]
        child_fk = getattr(child_model, PARENT_FK[child_level])
        children = (
            session.query(child_model)
            .filter(child_model.org_id == org_id, child_fk.in_(group.duplicate_ids))
            .order_by(child_model.sort_order, child_model.id)
            .all()
        )
        for child in children:
            if child.is_active:
                new_code = codes.next_code(
                    child_level,
                    canonical.code,
                    sibling_codes(session, org_id, child_level, canonical.code),
                )
                report.recoded += _recode_subtree(session, org_id, child_level, child, new_code)
            setattr(child, PARENT_REL[child_level], canonical)
            session.flush()
            report.reassigned += 1

    for dup_id in group.duplicate_ids:
        dup = session.get(model, dup_id)
        report.removed_codes.append(dup.code)
        session.delete(dup)
        report.removed += 1
    session.flush()
    report.groups += 1
    logger.info(
        "merged %d duplicate %s(s) named %r into %s (id %s)",
        len(group.duplicate_ids), group.level.label, group.name, canonical.code, canonical.id,
    )


def reconcile_duplicates(session: Session, org_id: int, level, *, commit: bool = True) -> DedupeReport:
    """
    Merge duplicates at one level. With ``commit`` the run is committed on
    success and rolled back entirely on any failure.
    """
    lvl = codes.coerce_level(level)
    report = DedupeReport(level=lvl)
    groups = find_duplicate_groups(session, org_id, lvl)
    if not groups:
        return report
    try:
        for group in groups:
            _merge_group(session, org_id, group, report)
        if commit:
            session.commit()
    except Exception:
        session.rollback()
        logger.exception("duplicate reconciliation failed for %s level (org %s); rolled back", lvl.label, org_id)
        raise
    return report


def reconcile_library(session: Session, org_id: int) -> List[DedupeReport]:
    """All levels, top-down, in a single transaction."""
    reports = []
    try:
        for lvl in Level:
            reports.append(reconcile_duplicates(session, org_id, lvl, commit=False))
        session.commit()
    except Exception:
        session.rollback()
        raise
    return reports
