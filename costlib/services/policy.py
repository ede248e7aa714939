from functools import wraps
from flask import abort, g, jsonify, session
from flask_login import current_user
from costlib.extensions import db
from costlib.utils.helpers import wants_json
from costlib.models.org_membership import OrgMembership, WRITE_ROLES

_ERROR_KEYS = {401: "unauthorized", 403: "forbidden", 404: "not_found"}

def current_org_id():
    oid = session.get("current_org_id")
    if not oid and getattr(current_user, "is_authenticated", False):
        oid = getattr(current_user, "org_id", None)
    return oid

def _membership(org_id):
    return db.session.query(OrgMembership).filter_by(org_id=org_id, user_id=current_user.id).one_or_none()

def _check(roles=None):
    """None when allowed, else an error response (or abort)."""
    if not getattr(current_user, "is_authenticated", False):
        return _abort_smart(401)
    org_id = current_org_id()
    if not org_id:
        return _abort_smart(401)
    m = _membership(org_id)
    if not m:
        return _abort_smart(404)  # anti-enumeration
    if roles and m.role not in roles:
        return _abort_smart(403)
    g.org_id = org_id
    g.membership = m
    return None

def require_member(fn):
    @wraps(fn)
    def _wrap(*args, **kwargs):
        denied = _check()
        if denied is not None:
            return denied
        return fn(*args, **kwargs)
    return _wrap

def role_required(*roles):
    def deco(fn):
        @wraps(fn)
        def _wrap(*args, **kwargs):
            denied = _check(roles)
            if denied is not None:
                return denied
            return fn(*args, **kwargs)
        return _wrap
    return deco

# Library catalog writes: owners and admins only
require_library_write = role_required(*WRITE_ROLES)

def _abort_smart(code: int):
    if wants_json():
        return jsonify({"error": _ERROR_KEYS[code], "code": code}), code
    abort(code)
