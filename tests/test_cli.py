from costlib.extensions import db
from costlib.models import Org, OrgMembership, Division, Section, ROLE_OWNER, ROLE_ADMIN

def _org(app, name="CLI Org"):
    with app.app_context():
        org = Org(name=name)
        db.session.add(org); db.session.commit()
        return org.id

def test_bootstrap_owner_and_promote_demote(app):
    runner = app.test_cli_runner()
    res = runner.invoke(args=["bootstrap", "owner", "--org-name", "Acme", "--email", "o@example.com", "--password", "pw-123456"])
    assert res.exit_code == 0, res.output
    with app.app_context():
        org_id = db.session.query(Org).filter_by(name="Acme").one().id
    res = runner.invoke(args=["users", "create", "--email", "m@example.com", "--password", "pw", "--org-id", str(org_id)])
    assert res.exit_code == 0, res.output

    res = runner.invoke(args=["members", "promote", "--org-id", str(org_id), "--email", "m@example.com", "--role", ROLE_ADMIN])
    assert res.exit_code == 0
    res = runner.invoke(args=["members", "demote", "--org-id", str(org_id), "--email", "o@example.com"])
    assert res.exit_code != 0 and "last owner" in res.output
    with app.app_context():
        roles = sorted(m.role for m in db.session.query(OrgMembership).filter_by(org_id=org_id))
    assert roles == sorted([ROLE_ADMIN, ROLE_OWNER])

def test_next_code(app):
    org_id = _org(app)
    runner = app.test_cli_runner()
    res = runner.invoke(args=["library", "next-code", "--org-id", str(org_id), "--level", "2", "--parent", "03"])
    assert res.exit_code == 0 and res.output.strip() == "03.10"
    res = runner.invoke(args=["library", "next-code", "--org-id", str(org_id), "--level", "2", "--parent", "3"])
    assert res.exit_code != 0 and "Invalid division code format" in res.output

def test_import_dedupe_resort(app, tmp_path):
    org_id = _org(app)
    sheet = tmp_path / "lib.csv"
    sheet.write_text(
        "Code,Name,Unit\n"
        "01,Electrical,\n"
        "02,Electrical,\n"
        "02.10,Lighting,\n"
        "9,Broken,\n"
    )
    runner = app.test_cli_runner()

    res = runner.invoke(args=["library", "import", "--org-id", str(org_id), "--dry-run", str(sheet)])
    assert res.exit_code == 0 and "Dry run" in res.output
    with app.app_context():
        assert db.session.query(Division).filter_by(org_id=org_id).count() == 0

    res = runner.invoke(args=["library", "import", "--org-id", str(org_id), str(sheet)])
    assert res.exit_code == 0
    assert "inserted=3" in res.output and "skipped=1" in res.output

    res = runner.invoke(args=["library", "dedupe", "--org-id", str(org_id), "--level", "1"])
    assert res.exit_code == 0 and "removed=1" in res.output
    with app.app_context():
        assert [d.code for d in db.session.query(Division).filter_by(org_id=org_id)] == ["01"]
        assert db.session.query(Section).filter_by(org_id=org_id).one().code == "01.10"

    res = runner.invoke(args=["library", "resort", "--org-id", str(org_id)])
    assert res.exit_code == 0 and "0 row(s) updated" in res.output

def test_unknown_org(app):
    res = app.test_cli_runner().invoke(args=["library", "resort", "--org-id", "999"])
    assert res.exit_code != 0 and "not found" in res.output
