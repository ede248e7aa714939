from flask import request, session, jsonify
from flask_login import login_user, logout_user, current_user, login_required
from flask_wtf.csrf import generate_csrf
from sqlalchemy import func
from costlib.extensions import db, limiter, csrf
from costlib.models.user import User
from costlib.models.org import Org
from costlib.models.org_membership import OrgMembership, ROLE_OWNER, ROLE_MEMBER
from . import bp


def _credentials():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or request.form.get("email") or "").strip()
    password = data.get("password") or request.form.get("password") or ""
    return email, password


def _login_email_scope():
    email, _ = _credentials()
    # Keep a stable scope even if email is blank
    return f"login-email:{email.lower() or 'missing'}"


def _ensure_membership(user: User) -> OrgMembership:
    """Every session runs inside an org: create one (and a membership) on first login."""
    if not user.org_id:
        org = Org(name=(user.email or f"Org {user.id}"))
        db.session.add(org)
        db.session.flush()
        user.org_id = org.id

    membership = db.session.query(OrgMembership).filter_by(org_id=user.org_id, user_id=user.id).one_or_none()
    if membership is None:
        # Owner if the org has none yet, otherwise member
        owner_exists = db.session.query(OrgMembership).filter_by(org_id=user.org_id, role=ROLE_OWNER).count() > 0
        membership = OrgMembership(
            org_id=user.org_id,
            user_id=user.id,
            role=ROLE_MEMBER if owner_exists else ROLE_OWNER,
        )
        db.session.add(membership)
    db.session.commit()
    return membership


def _me_payload(user: User, membership: OrgMembership | None) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "org_id": membership.org_id if membership else user.org_id,
        "role": membership.role if membership else None,
        "can_write": bool(membership and membership.can_write),
    }


@bp.post("/login")
@limiter.limit("10 per minute; 100 per hour")              # per-IP (anon -> IP via _rate_limit_key)
@limiter.limit("5 per minute; 20 per hour", key_func=_login_email_scope)  # per-account
def login_post():
    email, password = _credentials()
    if not email or not password:
        return jsonify({"error": "validation_error", "message": "Email and password are required"}), 400

    user = db.session.execute(
        db.select(User).where(func.lower(User.email) == func.lower(email))
    ).scalar_one_or_none()
    if not user or not user.is_active or not user.check_password(password):
        return jsonify({"error": "invalid_credentials", "message": "Invalid credentials"}), 400

    membership = _ensure_membership(user)
    session["current_org_id"] = membership.org_id
    login_user(user)
    return jsonify({"user": _me_payload(user, membership)}), 200


@bp.post("/logout")
def logout_post():
    if current_user.is_authenticated:
        logout_user()
    session.pop("current_org_id", None)
    return jsonify({"success": True}), 200


@bp.get("/me")
@login_required
def me():
    org_id = session.get("current_org_id") or current_user.org_id
    membership = None
    if org_id:
        membership = db.session.query(OrgMembership).filter_by(org_id=org_id, user_id=current_user.id).one_or_none()
    return jsonify({"user": _me_payload(current_user, membership)}), 200


@csrf.exempt
@bp.get("/csrf-token")
def csrf_token():
    token = generate_csrf()
    resp = jsonify({"csrf_token": token})
    # keep tokens fresh; avoid caches holding stale tokens
    resp.headers["Cache-Control"] = "no-store"
    return resp
