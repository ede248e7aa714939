from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

from flask import current_app, has_app_context
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.sql import func

from costlib.models import Assembly, Division, LibraryItem, Section
from costlib.models.library_item import (
    ITEM_STATUS_ACTUAL,
    ITEM_STATUS_CONFIRMED,
    ITEM_STATUS_DRAFT,
    ITEM_STATUSES,
)
from costlib.utils.validators import clean_str

from . import codes
from .codes import Level
from .errors import (
    DeleteBlocked,
    DuplicateCode,
    InvalidFormat,
    NotFound,
    StorageUnavailable,
    UnsupportedLevel,
    ValidationError,
)

logger = logging.getLogger(__name__)

LEVEL_MODELS = {
    Level.DIVISION: Division,
    Level.SECTION: Section,
    Level.ASSEMBLY: Assembly,
    Level.ITEM: LibraryItem,
}

# Foreign key column pointing at the parent row, per level
PARENT_FK = {
    Level.SECTION: "division_id",
    Level.ASSEMBLY: "section_id",
    Level.ITEM: "assembly_id",
}

# Relationship (backref) to the parent row, per level
PARENT_REL = {
    Level.SECTION: "division",
    Level.ASSEMBLY: "section",
    Level.ITEM: "assembly",
}

# URL segment <-> level
LEVEL_NAMES = {
    "divisions": Level.DIVISION,
    "sections": Level.SECTION,
    "assemblies": Level.ASSEMBLY,
    "items": Level.ITEM,
}
PLURALS = {level: name for name, level in LEVEL_NAMES.items()}

DEFAULT_CODE_RETRIES = 3


def level_from_name(name: str) -> Level:
    try:
        return LEVEL_NAMES[(name or "").strip().lower()]
    except KeyError:
        raise UnsupportedLevel(f"Unknown library level: {name!r}") from None


def _code_retries() -> int:
    if has_app_context():
        return int(current_app.config.get("LIBRARY_CODE_RETRIES", DEFAULT_CODE_RETRIES))
    return DEFAULT_CODE_RETRIES


def _active(session: Session, model, org_id: int):
    return session.query(model).filter(model.org_id == org_id, model.is_active.is_(True))


# ---------------------------------------------------------------------------
# Allocation
# ---------------------------------------------------------------------------

def sibling_codes(session: Session, org_id: int, level, parent_code: Optional[str]) -> List[str]:
    """Codes held by active rows of ``level`` under ``parent_code`` (all divisions at level 1)."""
    lvl = codes.coerce_level(level)
    model = LEVEL_MODELS[lvl]
    q = session.query(model.code).filter(model.org_id == org_id, model.is_active.is_(True))
    if lvl != Level.DIVISION:
        q = q.filter(model.code.like(f"{parent_code}.%"))
    try:
        return [row[0] for row in q.order_by(model.code).all()]
    except OperationalError as e:
        raise StorageUnavailable(f"Failed to fetch {PLURALS[lvl]}") from e


def generate_code(session: Session, org_id: int, level, parent_code: Optional[str] = None) -> str:
    """
    Propose the next free code for ``level`` under ``parent_code``.
    Nothing is reserved: persist it and retry on DuplicateCode.
    """
    lvl = codes.coerce_level(level)
    parent = codes.check_parent_code(lvl, parent_code)
    return codes.next_code(lvl, parent, sibling_codes(session, org_id, lvl, parent))


def code_exists(session: Session, org_id: int, code: str, level) -> bool:
    lvl = codes.coerce_level(level)
    model = LEVEL_MODELS[lvl]
    q = _active(session, model, org_id).filter(model.code == code)
    try:
        return session.query(q.exists()).scalar()
    except OperationalError as e:
        raise StorageUnavailable("Failed to check code existence") from e


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def get_node(session: Session, org_id: int, level, *, node_id: Optional[int] = None,
             code: Optional[str] = None):
    lvl = codes.coerce_level(level)
    model = LEVEL_MODELS[lvl]
    q = _active(session, model, org_id)
    if node_id is not None:
        q = q.filter(model.id == node_id)
    elif code:
        q = q.filter(model.code == code)
    else:
        raise ValidationError(f"{lvl.label.capitalize()} id or code is required")
    obj = q.one_or_none()
    if obj is None:
        ref = f"id {node_id}" if node_id is not None else f"code {code}"
        raise NotFound(f"{lvl.label.capitalize()} with {ref} not found")
    return obj


def _resolve_parent(session: Session, org_id: int, level: Level,
                    parent_id: Optional[int], parent_code: Optional[str]):
    parent_level = Level(level - 1)
    if parent_id is None and not parent_code:
        raise ValidationError(
            f"{parent_level.label.capitalize()} id or {parent_level.label} code is required"
        )
    if parent_id is not None:
        return get_node(session, org_id, parent_level, node_id=parent_id)
    if not isinstance(parent_code, str):
        raise ValidationError(
            f"{parent_level.label.capitalize()} code must be text like {codes.PATTERN_HINTS[parent_level]}"
        )
    return get_node(session, org_id, parent_level, code=parent_code.strip())


# ---------------------------------------------------------------------------
# Create / update
# ---------------------------------------------------------------------------

def _require_name(name: Optional[str], level: Level) -> str:
    cleaned = clean_str(name)
    if not cleaned:
        raise ValidationError(f"{level.label.capitalize()} name is required")
    return cleaned


def _insert(session: Session, model, values: dict):
    node = model(**values)
    session.add(node)
    session.flush()  # partial unique index (org_id, code) WHERE is_active
    return node


def _create_node(session: Session, org_id: int, level: Level, fields: dict, *,
                 parent=None, code: Optional[str] = None):
    model = LEVEL_MODELS[level]
    label = level.label.capitalize()
    base = dict(fields, org_id=org_id)
    parent_code = None
    if parent is not None:
        # plain values: a rollback below expires ORM state
        parent_code = parent.code
        base[PARENT_FK[level]] = parent.id

    if code is not None and not isinstance(code, str):
        raise InvalidFormat(
            f"Invalid {level.label} code format. Must be {codes.PATTERN_HINTS[level]}"
        )
    supplied = (code or "").strip()
    if supplied:
        if not codes.validate_code(supplied, level):
            raise InvalidFormat(
                f"Invalid {level.label} code format. Must be {codes.PATTERN_HINTS[level]}"
            )
        if parent_code is not None and not codes.validate_hierarchy(supplied, parent_code):
            raise InvalidFormat(
                f"{label} code {supplied} does not belong to {Level(level - 1).label} {parent_code}"
            )
        if code_exists(session, org_id, supplied, level):
            raise DuplicateCode(f"{label} code {supplied} already exists")
        try:
            return _insert(session, model, dict(base, code=supplied, sort_order=codes.sort_key(supplied)))
        except IntegrityError as e:
            session.rollback()
            raise DuplicateCode(f"{label} code {supplied} already exists") from e

    attempts = max(1, _code_retries())
    for attempt in range(1, attempts + 1):
        candidate = generate_code(session, org_id, level, parent_code)
        try:
            node = _insert(session, model, dict(base, code=candidate, sort_order=codes.sort_key(candidate)))
        except IntegrityError:
            session.rollback()
            logger.info(
                "%s code %s was taken at insert (attempt %d/%d); re-allocating",
                level.label, candidate, attempt, attempts,
            )
            continue
        logger.debug("created %s %s (org %s)", level.label, candidate, org_id)
        return node
    raise DuplicateCode(f"Could not allocate a unique {level.label} code after {attempts} attempts")


def create_division(session: Session, org_id: int, *, name: str,
                    description: Optional[str] = None, code: Optional[str] = None) -> Division:
    fields = {"name": _require_name(name, Level.DIVISION), "description": clean_str(description, max_len=2000)}
    return _create_node(session, org_id, Level.DIVISION, fields, code=code)


def create_section(session: Session, org_id: int, *, name: str, description: Optional[str] = None,
                   code: Optional[str] = None, division_id: Optional[int] = None,
                   division_code: Optional[str] = None) -> Section:
    fields = {"name": _require_name(name, Level.SECTION), "description": clean_str(description, max_len=2000)}
    parent = _resolve_parent(session, org_id, Level.SECTION, division_id, division_code)
    return _create_node(session, org_id, Level.SECTION, fields, parent=parent, code=code)


def create_assembly(session: Session, org_id: int, *, name: str, description: Optional[str] = None,
                    code: Optional[str] = None, section_id: Optional[int] = None,
                    section_code: Optional[str] = None) -> Assembly:
    fields = {"name": _require_name(name, Level.ASSEMBLY), "description": clean_str(description, max_len=2000)}
    parent = _resolve_parent(session, org_id, Level.ASSEMBLY, section_id, section_code)
    return _create_node(session, org_id, Level.ASSEMBLY, fields, parent=parent, code=code)


def parse_wastage(value) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        pct = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("Wastage percentage must be a number") from None
    if pct < 0 or pct > 100:
        raise ValidationError("Wastage percentage must be between 0 and 100")
    return pct.quantize(Decimal("0.01"))


def create_item(session: Session, org_id: int, *, name: str, unit: str,
                description: Optional[str] = None, code: Optional[str] = None,
                assembly_id: Optional[int] = None, assembly_code: Optional[str] = None,
                specifications: Optional[str] = None, wastage_percentage=None,
                productivity_notes: Optional[str] = None) -> LibraryItem:
    clean_unit = clean_str(unit, max_len=32)
    if not clean_unit:
        raise ValidationError("Item unit is required")
    fields = {
        "name": _require_name(name, Level.ITEM),
        "description": clean_str(description, max_len=2000),
        "unit": clean_unit,
        "specifications": clean_str(specifications, max_len=4000),
        "wastage_percentage": parse_wastage(wastage_percentage),
        "productivity_notes": clean_str(productivity_notes, max_len=4000),
    }
    parent = _resolve_parent(session, org_id, Level.ITEM, assembly_id, assembly_code)
    return _create_node(session, org_id, Level.ITEM, fields, parent=parent, code=code)


def update_node(session: Session, org_id: int, level, node_id: int, *,
                name: Optional[str] = None, description: Optional[str] = None):
    lvl = codes.coerce_level(level)
    node = get_node(session, org_id, lvl, node_id=node_id)
    if name is not None:
        node.name = _require_name(name, lvl)
    if description is not None:
        node.description = clean_str(description, max_len=2000)
    node.updated_at = func.now()
    session.flush()
    return node


# ---------------------------------------------------------------------------
# Item status workflow
# ---------------------------------------------------------------------------

# draft -> confirmed -> actual; a confirmed item may go back to draft
ITEM_TRANSITIONS = {
    ITEM_STATUS_DRAFT: (ITEM_STATUS_CONFIRMED,),
    ITEM_STATUS_CONFIRMED: (ITEM_STATUS_ACTUAL, ITEM_STATUS_DRAFT),
    ITEM_STATUS_ACTUAL: (),
}


def set_item_status(session: Session, org_id: int, item_id: int, status: str) -> LibraryItem:
    target = clean_str(status, max_len=20)
    target = target.lower() if target else None
    if target not in ITEM_STATUSES:
        raise ValidationError(f"Status must be one of: {', '.join(ITEM_STATUSES)}")
    item = get_node(session, org_id, Level.ITEM, node_id=item_id)
    if target == item.status:
        return item
    if target not in ITEM_TRANSITIONS[item.status]:
        raise ValidationError(f"Cannot move item {item.code} from {item.status} to {target}")
    logger.info("item %s status %s -> %s (org %s)", item.code, item.status, target, org_id)
    item.status = target
    item.updated_at = func.now()
    session.flush()
    return item


def confirm_item(session: Session, org_id: int, item_id: int) -> LibraryItem:
    item = get_node(session, org_id, Level.ITEM, node_id=item_id)
    if item.status != ITEM_STATUS_DRAFT:
        raise ValidationError(f"Item must be in draft status to confirm (currently {item.status})")
    return set_item_status(session, org_id, item_id, ITEM_STATUS_CONFIRMED)


def mark_item_actual(session: Session, org_id: int, item_id: int) -> LibraryItem:
    item = get_node(session, org_id, Level.ITEM, node_id=item_id)
    if item.status != ITEM_STATUS_CONFIRMED:
        raise ValidationError(f"Item must be confirmed before it is marked actual (currently {item.status})")
    return set_item_status(session, org_id, item_id, ITEM_STATUS_ACTUAL)


# ---------------------------------------------------------------------------
# Soft delete (cascading)
# ---------------------------------------------------------------------------

def _descendants(session: Session, org_id: int, level: Level, node_id: int) -> Dict[Level, list]:
    found: Dict[Level, list] = {}
    current = [node_id]
    for child_level in range(level + 1, Level.ITEM + 1):
        child_level = Level(child_level)
        if not current:
            found[child_level] = []
            continue
        model = LEVEL_MODELS[child_level]
        fk = getattr(model, PARENT_FK[child_level])
        rows = _active(session, model, org_id).filter(fk.in_(current)).all()
        found[child_level] = rows
        current = [r.id for r in rows]
    return found


def _impact(node, level: Level, found: Dict[Level, list]) -> dict:
    items = list(found.get(Level.ITEM, []))
    if level == Level.ITEM:
        items = [node]
    impact = {
        level.label: {"id": node.id, "code": node.code, "name": node.name},
        "sections": len(found.get(Level.SECTION, [])),
        "assemblies": len(found.get(Level.ASSEMBLY, [])),
        "items": len(found.get(Level.ITEM, [])),
        "confirmed_items": sum(1 for i in items if i.status == ITEM_STATUS_CONFIRMED),
        "actual_items": sum(1 for i in items if i.status == ITEM_STATUS_ACTUAL),
    }
    return impact


def delete_impact(session: Session, org_id: int, level, node_id: int) -> dict:
    lvl = codes.coerce_level(level)
    node = get_node(session, org_id, lvl, node_id=node_id)
    return _impact(node, lvl, _descendants(session, org_id, lvl, node.id))


def soft_delete_node(session: Session, org_id: int, level, node_id: int, *, force: bool = False) -> dict:
    """
    Mark a node and all of its active descendants inactive.

    Without ``force``: refuses (400) when confirmed/actual items would go,
    and asks for confirmation (409) when the node still has children.
    """
    lvl = codes.coerce_level(level)
    node = get_node(session, org_id, lvl, node_id=node_id)
    found = _descendants(session, org_id, lvl, node.id)
    impact = _impact(node, lvl, found)
    label = lvl.label

    if not force and (impact["confirmed_items"] or impact["actual_items"]):
        raise DeleteBlocked(
            f"Cannot delete {label} with confirmed or actual library items",
            status_code=400,
            details={"impact": impact},
        )
    children = sum(len(rows) for rows in found.values())
    if not force and children:
        raise DeleteBlocked(
            f"{label.capitalize()} contains child nodes",
            status_code=409,
            error="has_children",
            details={
                "impact": impact,
                "hint": f"This will delete {impact['sections']} sections, {impact['assemblies']} "
                        f"assemblies, and {impact['items']} library items.",
            },
        )

    for row in [node, *[r for rows in found.values() for r in rows]]:
        row.is_active = False
        row.updated_at = func.now()
    session.flush()
    logger.info("soft-deleted %s %s and %d descendants (org %s)", label, impact[label]["code"], children, org_id)
    return impact


# ---------------------------------------------------------------------------
# Browse / maintenance
# ---------------------------------------------------------------------------

def serialize_node(node, level) -> dict:
    lvl = codes.coerce_level(level)
    data = {
        "id": node.id,
        "level": int(lvl),
        "code": node.code,
        "name": node.name,
        "description": node.description,
        "sort_order": node.sort_order,
        "is_active": node.is_active,
    }
    if lvl in PARENT_FK:
        data[PARENT_FK[lvl]] = getattr(node, PARENT_FK[lvl])
    if lvl == Level.ITEM:
        data.update(
            unit=node.unit,
            specifications=node.specifications,
            wastage_percentage=float(node.wastage_percentage or 0),
            productivity_notes=node.productivity_notes,
            status=node.status,
        )
    return data


def library_tree(session: Session, org_id: int) -> List[dict]:
    """Active hierarchy as nested dicts, each level ordered by sort_order."""
    rows = {
        lvl: _active(session, model, org_id).order_by(model.sort_order, model.id).all()
        for lvl, model in LEVEL_MODELS.items()
    }
    child_key = {
        Level.DIVISION: "sections",
        Level.SECTION: "assemblies",
        Level.ASSEMBLY: "items",
    }
    nodes = {lvl: {r.id: serialize_node(r, lvl) for r in rows[lvl]} for lvl in LEVEL_MODELS}
    for lvl, key in child_key.items():
        for data in nodes[lvl].values():
            data[key] = []
    for lvl in (Level.SECTION, Level.ASSEMBLY, Level.ITEM):
        parents = nodes[Level(lvl - 1)]
        for r in rows[lvl]:
            parent = parents.get(getattr(r, PARENT_FK[lvl]))
            if parent is not None:
                parent[child_key[Level(lvl - 1)]].append(nodes[lvl][r.id])
    return [nodes[Level.DIVISION][r.id] for r in rows[Level.DIVISION]]


def resort(session: Session, org_id: int) -> int:
    """Recompute sort_order from codes; returns how many rows changed."""
    changed = 0
    for model in LEVEL_MODELS.values():
        for row in session.query(model).filter(model.org_id == org_id).all():
            key = codes.sort_key(row.code) if codes.get_code_level(row.code) else 0
            if row.sort_order != key:
                row.sort_order = key
                changed += 1
    session.flush()
    return changed
