from flask import current_app, g, jsonify, request
from costlib.extensions import db, limiter
from costlib.services import library
from costlib.services.codes import Level
from costlib.services.errors import ServiceError
from costlib.services.policy import require_library_write, require_member
from costlib.utils.validators import first_present, parse_bool, parse_optional_int
from . import bp, service_error_response


def _payload() -> dict:
    return request.get_json(silent=True) or {}


def _create(level: Level, build):
    """Run a create call, commit, and shape the response."""
    try:
        node = build()
        db.session.commit()
        return jsonify(library.serialize_node(node, level)), 201
    except ServiceError as se:
        db.session.rollback()
        return service_error_response(se)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("POST /library/api/%s failed", library.PLURALS[level])
        return jsonify({"error": "server_error", "message": f"Failed to create {level.label}"}), 500


@bp.get("/api/hierarchy")
@require_member
def hierarchy():
    """Active catalog as a nested tree ordered by code."""
    try:
        return jsonify({"divisions": library.library_tree(db.session, g.org_id)}), 200
    except ServiceError as se:
        return service_error_response(se)
    except Exception:
        current_app.logger.exception("GET /library/api/hierarchy failed")
        return jsonify({"error": "server_error", "message": "Failed to fetch hierarchy"}), 500


@bp.post("/api/divisions")
@limiter.limit("120 per minute")
@require_library_write
def create_division():
    data = _payload()
    return _create(
        Level.DIVISION,
        lambda: library.create_division(
            db.session,
            g.org_id,
            name=data.get("name"),
            description=data.get("description"),
            code=data.get("code"),
        ),
    )


@bp.post("/api/sections")
@limiter.limit("120 per minute")
@require_library_write
def create_section():
    data = _payload()
    return _create(
        Level.SECTION,
        lambda: library.create_section(
            db.session,
            g.org_id,
            name=data.get("name"),
            description=data.get("description"),
            code=data.get("code"),
            division_id=parse_optional_int(first_present(data, "division_id", "divisionId")),
            division_code=first_present(data, "division_code", "divisionCode"),
        ),
    )


@bp.post("/api/assemblies")
@limiter.limit("120 per minute")
@require_library_write
def create_assembly():
    data = _payload()
    return _create(
        Level.ASSEMBLY,
        lambda: library.create_assembly(
            db.session,
            g.org_id,
            name=data.get("name"),
            description=data.get("description"),
            code=data.get("code"),
            section_id=parse_optional_int(first_present(data, "section_id", "sectionId")),
            section_code=first_present(data, "section_code", "sectionCode"),
        ),
    )


@bp.post("/api/items")
@limiter.limit("120 per minute")
@require_library_write
def create_item():
    data = _payload()
    return _create(
        Level.ITEM,
        lambda: library.create_item(
            db.session,
            g.org_id,
            name=data.get("name"),
            unit=data.get("unit"),
            description=data.get("description"),
            code=data.get("code"),
            assembly_id=parse_optional_int(first_present(data, "assembly_id", "assemblyId")),
            assembly_code=first_present(data, "assembly_code", "assemblyCode"),
            specifications=data.get("specifications"),
            wastage_percentage=first_present(data, "wastage_percentage", "wastagePercentage"),
            productivity_notes=first_present(data, "productivity_notes", "productivityNotes"),
        ),
    )


@bp.patch("/api/<level_name>/<int:node_id>")
@limiter.limit("120 per minute")
@require_library_write
def update_node(level_name: str, node_id: int):
    """Rename / re-describe. Codes are immutable."""
    data = _payload()
    try:
        level = library.level_from_name(level_name)
        node = library.update_node(
            db.session,
            g.org_id,
            level,
            node_id,
            name=data.get("name"),
            description=data.get("description"),
        )
        db.session.commit()
        return jsonify(library.serialize_node(node, level)), 200
    except ServiceError as se:
        db.session.rollback()
        return service_error_response(se)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("PATCH /library/api/%s/%s failed", level_name, node_id)
        return jsonify({"error": "server_error", "message": "Failed to update"}), 500


def _item_status(item_id: int, action: str, change):
    try:
        item = change()
        db.session.commit()
        return jsonify(library.serialize_node(item, Level.ITEM)), 200
    except ServiceError as se:
        db.session.rollback()
        return service_error_response(se)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("POST /library/api/items/%s/%s failed", item_id, action)
        return jsonify({"error": "server_error", "message": "Failed to update item status"}), 500


@bp.post("/api/items/<int:item_id>/confirm")
@limiter.limit("120 per minute")
@require_library_write
def confirm_item(item_id: int):
    return _item_status(item_id, "confirm", lambda: library.confirm_item(db.session, g.org_id, item_id))


@bp.post("/api/items/<int:item_id>/mark-actual")
@limiter.limit("120 per minute")
@require_library_write
def mark_item_actual(item_id: int):
    return _item_status(item_id, "mark-actual", lambda: library.mark_item_actual(db.session, g.org_id, item_id))


@bp.post("/api/items/<int:item_id>/status")
@limiter.limit("120 per minute")
@require_library_write
def set_item_status(item_id: int):
    """Body: {"status": "draft" | "confirmed" | "actual"}."""
    status = _payload().get("status")
    return _item_status(
        item_id, "status", lambda: library.set_item_status(db.session, g.org_id, item_id, status)
    )


@bp.get("/api/<level_name>/<int:node_id>/impact")
@require_member
def delete_impact(level_name: str, node_id: int):
    """What a delete of this node would take with it."""
    try:
        level = library.level_from_name(level_name)
        return jsonify({"impact": library.delete_impact(db.session, g.org_id, level, node_id)}), 200
    except ServiceError as se:
        return service_error_response(se)
    except Exception:
        current_app.logger.exception("GET /library/api/%s/%s/impact failed", level_name, node_id)
        return jsonify({"error": "server_error", "message": "Failed to compute impact"}), 500


@bp.delete("/api/<level_name>/<int:node_id>")
@limiter.limit("120 per minute")
@require_library_write
def delete_node(level_name: str, node_id: int):
    """
    Soft delete with cascade. Without ?force=true a node that still has
    children answers 409 with the impact so the client can confirm.
    """
    force = parse_bool(request.args.get("force"))
    try:
        level = library.level_from_name(level_name)
        impact = library.soft_delete_node(db.session, g.org_id, level, node_id, force=force)
        db.session.commit()
        return jsonify({"success": True, "impact": impact}), 200
    except ServiceError as se:
        db.session.rollback()
        return service_error_response(se)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("DELETE /library/api/%s/%s failed", level_name, node_id)
        return jsonify({"error": "server_error", "message": "Failed to delete"}), 500
