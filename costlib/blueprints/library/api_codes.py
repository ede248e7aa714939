from flask import current_app, g, jsonify, request
from costlib.extensions import db
from costlib.services import codes, library
from costlib.services.errors import ServiceError
from costlib.services.policy import require_member
from costlib.utils.validators import first_present
from . import bp, service_error_response


@bp.post("/api/codes/preview")
@require_member
def preview_code():
    """Next free code for a level/parent. Nothing is reserved."""
    data = request.get_json(silent=True) or {}
    try:
        level = codes.coerce_level(data.get("level"))
        parent_code = first_present(data, "parentCode", "parent_code")
        if isinstance(parent_code, str):
            parent_code = parent_code.strip()
        code = library.generate_code(db.session, g.org_id, level, parent_code)
        return jsonify(
            {
                "code": code,
                "level": int(level),
                "parent_code": parent_code if level > codes.Level.DIVISION else None,
            }
        ), 200
    except ServiceError as se:
        return service_error_response(se)
    except Exception:
        current_app.logger.exception("POST /library/api/codes/preview failed")
        return jsonify({"error": "server_error", "message": "Failed to generate code"}), 500


@bp.get("/api/codes/validate")
@require_member
def validate_code():
    """Shape check only; does not look at storage."""
    code = (request.args.get("code") or "").strip()
    level_raw = (request.args.get("level") or "").strip()
    try:
        level = codes.coerce_level(level_raw) if level_raw else None
    except ServiceError as se:
        return service_error_response(se)

    detected = codes.get_code_level(code)
    valid = codes.validate_code(code, level) if level else bool(detected)
    return jsonify(
        {
            "code": code,
            "valid": valid,
            "level": detected or None,
            "parent_code": (codes.get_parent_code(code) or None) if detected else None,
            "sort_key": codes.sort_key(code) if detected else None,
        }
    ), 200
