import types

from sqlalchemy.exc import OperationalError

from costlib.blueprints.library import api_codes
from costlib.extensions import db
from costlib.models import Org, User, OrgMembership, LibraryItem, ROLE_ADMIN, ROLE_MEMBER, ROLE_OWNER

def _login(client, user_id: int, org_id: int):
    with client.session_transaction() as sess:
        sess["_user_id"] = str(user_id)
        sess["current_org_id"] = org_id

def _make_org_user(app, role=ROLE_OWNER, email="lib@example.com"):
    with app.app_context():
        org = Org(name="Library Org")
        db.session.add(org); db.session.commit()
        u = User(email=email, org_id=org.id, is_active=True)
        u.set_password("x")
        db.session.add(u); db.session.commit()
        db.session.add(OrgMembership(org_id=org.id, user_id=u.id, role=role)); db.session.commit()
        return org.id, u.id

def _as(app, client, role=ROLE_OWNER):
    org_id, u_id = _make_org_user(app, role=role)
    _login(client, u_id, org_id)
    return org_id

def _post(client, path, body):
    return client.post(path, json=body, headers={"Accept": "application/json"})

def test_anonymous_gets_401(client):
    resp = _post(client, "/library/api/codes/preview", {"level": 1})
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "unauthorized"

def test_preview_division_and_children(app, client):
    _as(app, client)
    resp = _post(client, "/library/api/codes/preview", {"level": 1})
    assert resp.status_code == 200
    assert resp.get_json() == {"code": "01", "level": 1, "parent_code": None}

    resp = _post(client, "/library/api/codes/preview", {"level": 2, "parentCode": "02"})
    assert resp.get_json()["code"] == "02.10"
    resp = _post(client, "/library/api/codes/preview", {"level": "4", "parent_code": "02.10.10"})
    assert resp.get_json()["code"] == "02.10.10.01"

def test_preview_errors(app, client):
    _as(app, client)
    resp = _post(client, "/library/api/codes/preview", {"level": 5})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "unsupported_level"

    resp = _post(client, "/library/api/codes/preview", {"level": 3, "parentCode": "02"})
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["error"] == "invalid_parent_format"
    assert "XX.XX" in body["message"]

def test_preview_overflow_is_409(app, client):
    _as(app, client)
    assert _post(client, "/library/api/divisions", {"name": "Last", "code": "99"}).status_code == 201
    resp = _post(client, "/library/api/codes/preview", {"level": 1})
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "code_overflow"

def test_validate_endpoint(app, client):
    _as(app, client, role=ROLE_MEMBER)
    resp = client.get("/library/api/codes/validate?code=02.10.10&level=3")
    assert resp.get_json() == {
        "code": "02.10.10",
        "valid": True,
        "level": 3,
        "parent_code": "02.10",
        "sort_key": 2101000,
    }
    resp = client.get("/library/api/codes/validate?code=02.1")
    assert resp.get_json()["valid"] is False

def test_create_full_chain(app, client):
    _as(app, client)
    div = _post(client, "/library/api/divisions", {"name": "Electrical", "code": "02"})
    assert div.status_code == 201
    assert div.get_json()["sort_order"] == 2000000

    sec = _post(client, "/library/api/sections", {"name": "Wiring", "divisionCode": "02"})
    assert sec.status_code == 201 and sec.get_json()["code"] == "02.10"

    asm = _post(client, "/library/api/assemblies", {"name": "Conduit", "sectionId": sec.get_json()["id"]})
    assert asm.status_code == 201 and asm.get_json()["code"] == "02.10.10"

    item = _post(client, "/library/api/items", {
        "name": "EMT 3/4", "unit": "m", "assemblyCode": "02.10.10", "wastagePercentage": 3,
    })
    assert item.status_code == 201
    data = item.get_json()
    assert data["code"] == "02.10.10.01"
    assert data["wastage_percentage"] == 3.0
    assert data["status"] == "draft"

    tree = client.get("/library/api/hierarchy").get_json()["divisions"]
    assert tree[0]["sections"][0]["assemblies"][0]["items"][0]["name"] == "EMT 3/4"

def test_create_errors(app, client):
    _as(app, client)
    assert _post(client, "/library/api/divisions", {"name": "Electrical", "code": "2"}).status_code == 400
    assert _post(client, "/library/api/divisions", {"code": "03"}).status_code == 400
    assert _post(client, "/library/api/divisions", {"name": "Electrical", "code": "02"}).status_code == 201
    dup = _post(client, "/library/api/divisions", {"name": "Again", "code": "02"})
    assert dup.status_code == 409 and dup.get_json()["error"] == "duplicate_code"
    missing = _post(client, "/library/api/sections", {"name": "Orphan", "divisionCode": "07"})
    assert missing.status_code == 404
    wrong = _post(client, "/library/api/sections", {"name": "Bad", "divisionCode": "02", "code": "03.10"})
    assert wrong.status_code == 400 and wrong.get_json()["error"] == "invalid_format"

def test_member_cannot_write(app, client):
    _as(app, client, role=ROLE_MEMBER)
    resp = _post(client, "/library/api/divisions", {"name": "Nope"})
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "forbidden"
    assert client.get("/library/api/hierarchy").status_code == 200

def test_admin_can_write(app, client):
    _as(app, client, role=ROLE_ADMIN)
    assert _post(client, "/library/api/divisions", {"name": "Yes"}).status_code == 201

def test_patch_renames(app, client):
    _as(app, client)
    div = _post(client, "/library/api/divisions", {"name": "Electric"}).get_json()
    resp = client.patch(f"/library/api/divisions/{div['id']}", json={"name": "Electrical"})
    assert resp.status_code == 200
    assert resp.get_json()["name"] == "Electrical" and resp.get_json()["code"] == div["code"]
    assert client.patch("/library/api/widgets/1", json={"name": "x"}).status_code == 400
    assert client.patch("/library/api/divisions/9999", json={"name": "x"}).status_code == 404

def test_delete_flow(app, client):
    _as(app, client)
    div = _post(client, "/library/api/divisions", {"name": "Electrical"}).get_json()
    _post(client, "/library/api/sections", {"name": "Wiring", "divisionId": div["id"]})

    impact = client.get(f"/library/api/divisions/{div['id']}/impact").get_json()["impact"]
    assert impact["sections"] == 1

    blocked = client.delete(f"/library/api/divisions/{div['id']}")
    assert blocked.status_code == 409
    body = blocked.get_json()
    assert body["error"] == "has_children"
    assert body["impact"]["sections"] == 1
    assert "hint" in body

    ok = client.delete(f"/library/api/divisions/{div['id']}?force=true")
    assert ok.status_code == 200
    assert ok.get_json()["impact"]["division"]["id"] == div["id"]
    assert client.get("/library/api/hierarchy").get_json()["divisions"] == []
    assert client.delete(f"/library/api/divisions/{div['id']}?force=true").status_code == 404

def test_delete_blocked_by_confirmed_item(app, client):
    _as(app, client)
    _post(client, "/library/api/divisions", {"name": "Electrical", "code": "02"})
    sec = _post(client, "/library/api/sections", {"name": "Wiring", "divisionCode": "02"}).get_json()
    _post(client, "/library/api/assemblies", {"name": "Conduit", "sectionCode": "02.10"})
    item = _post(client, "/library/api/items", {"name": "EMT", "unit": "m", "assemblyCode": "02.10.10"}).get_json()
    with app.app_context():
        db.session.get(LibraryItem, item["id"]).status = "actual"
        db.session.commit()
    resp = client.delete(f"/library/api/sections/{sec['id']}")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "delete_blocked"
    assert resp.get_json()["impact"]["actual_items"] == 1

def test_other_org_rows_are_invisible(app, client):
    org_id = _as(app, client)
    with app.app_context():
        other = Org(name="Other")
        db.session.add(other); db.session.commit()
        other_id = other.id
    div = _post(client, "/library/api/divisions", {"name": "Mine"}).get_json()
    with client.session_transaction() as sess:
        sess["current_org_id"] = other_id
    # Not a member of the other org
    assert client.get("/library/api/hierarchy").status_code == 404
    with client.session_transaction() as sess:
        sess["current_org_id"] = org_id
    assert client.get("/library/api/hierarchy").get_json()["divisions"][0]["id"] == div["id"]

def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200 and resp.get_json() == {"status": "ok"}

def test_numeric_codes_are_400_not_500(app, client):
    _as(app, client)
    resp = _post(client, "/library/api/divisions", {"name": "X", "code": 5})
    assert resp.status_code == 400 and resp.get_json()["error"] == "invalid_format"
    _post(client, "/library/api/divisions", {"name": "Electrical", "code": "02"})
    resp = _post(client, "/library/api/sections", {"name": "X", "division_code": 2})
    assert resp.status_code == 400 and resp.get_json()["error"] == "validation_error"

class _DownQuery:
    def filter(self, *a, **kw): return self
    def order_by(self, *a, **kw): return self
    def all(self): raise OperationalError("SELECT", {}, Exception("db down"))

def test_preview_when_storage_is_down(app, client, monkeypatch):
    _as(app, client)
    down = types.SimpleNamespace(session=types.SimpleNamespace(query=lambda *a, **kw: _DownQuery()))
    monkeypatch.setattr(api_codes, "db", down)
    resp = _post(client, "/library/api/codes/preview", {"level": 1})
    assert resp.status_code == 500
    assert resp.get_json()["error"] == "storage_unavailable"

def _item(client):
    _post(client, "/library/api/divisions", {"name": "Electrical", "code": "02"})
    _post(client, "/library/api/sections", {"name": "Wiring", "divisionCode": "02"})
    _post(client, "/library/api/assemblies", {"name": "Conduit", "sectionCode": "02.10"})
    return _post(client, "/library/api/items", {"name": "EMT", "unit": "m", "assemblyCode": "02.10.10"}).get_json()

def test_item_status_endpoints(app, client):
    _as(app, client)
    item = _item(client)
    resp = _post(client, f"/library/api/items/{item['id']}/confirm", {})
    assert resp.status_code == 200 and resp.get_json()["status"] == "confirmed"

    again = _post(client, f"/library/api/items/{item['id']}/confirm", {})
    assert again.status_code == 400
    assert "draft status" in again.get_json()["message"]

    sec_id = client.get("/library/api/hierarchy").get_json()["divisions"][0]["sections"][0]["id"]
    blocked = client.delete(f"/library/api/sections/{sec_id}")
    assert blocked.status_code == 400 and blocked.get_json()["error"] == "delete_blocked"

    resp = _post(client, f"/library/api/items/{item['id']}/mark-actual", {})
    assert resp.status_code == 200 and resp.get_json()["status"] == "actual"
    resp = _post(client, f"/library/api/items/{item['id']}/status", {"status": "draft"})
    assert resp.status_code == 400 and resp.get_json()["error"] == "validation_error"
    assert _post(client, "/library/api/items/9999/confirm", {}).status_code == 404

def test_item_status_set_and_reopen(app, client):
    _as(app, client)
    item = _item(client)
    resp = _post(client, f"/library/api/items/{item['id']}/status", {"status": "confirmed"})
    assert resp.get_json()["status"] == "confirmed"
    resp = _post(client, f"/library/api/items/{item['id']}/status", {"status": "draft"})
    assert resp.status_code == 200 and resp.get_json()["status"] == "draft"
    bad = _post(client, f"/library/api/items/{item['id']}/status", {"status": "archived"})
    assert bad.status_code == 400

def test_member_cannot_change_item_status(app, client):
    org_id = _as(app, client)
    item = _item(client)
    _, member_id = _make_org_user(app, role=ROLE_MEMBER, email="member@example.com")
    with app.app_context():
        m = db.session.query(OrgMembership).filter_by(user_id=member_id).one()
        m.org_id = org_id
        db.session.commit()
    _login(client, member_id, org_id)
    resp = _post(client, f"/library/api/items/{item['id']}/confirm", {})
    assert resp.status_code == 403
