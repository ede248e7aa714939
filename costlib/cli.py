import click
from flask import current_app
from flask.cli import with_appcontext
from costlib.extensions import db
from costlib.models.user import User
from costlib.models.org import Org
from costlib.models.org_membership import OrgMembership, ROLE_OWNER, ROLE_ADMIN, ROLE_MEMBER
from costlib.services import codes, dedupe, library, library_import
from costlib.services.errors import ServiceError


def _get_or_create_org(name: str) -> Org:
    org = db.session.query(Org).filter(Org.name == name).one_or_none()
    if org:
        return org
    org = Org(name=name, is_active=True)
    db.session.add(org)
    db.session.flush()
    return org


def _require_org(org_id: int) -> Org:
    org = db.session.get(Org, org_id)
    if not org:
        raise click.ClickException(f"Org id {org_id} not found")
    return org


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

@click.group()
def bootstrap():
    """Bootstrap helpers."""

@bootstrap.command("owner")
@click.option("--org-name", required=True)
@click.option("--email", required=True)
@click.option("--password", required=True)
@with_appcontext
def bootstrap_owner(org_name, email, password):
    # fail fast if user exists
    if db.session.query(User).filter_by(email=email).count():
        raise click.ClickException("User already exists")

    org = _get_or_create_org(org_name)

    user = User(email=email, is_active=True, org_id=org.id)
    user.set_password(password)
    db.session.add(user)
    db.session.flush()

    db.session.add(OrgMembership(org_id=org.id, user_id=user.id, role=ROLE_OWNER))
    db.session.commit()

    click.echo(f"Bootstrap complete: org_id={org.id} owner_user_id={user.id} email={email}")

@click.group()
def users():
    """User management."""

@users.command("create")
@click.option("--email", required=True)
@click.option("--password", required=True)
@click.option("--org-id", type=int, required=True, help="Existing org id")
@click.option("--role", type=click.Choice([ROLE_MEMBER, ROLE_ADMIN, ROLE_OWNER]), default=ROLE_MEMBER)
@with_appcontext
def users_create(email, password, org_id, role):
    if db.session.query(User).filter_by(email=email).count():
        raise click.ClickException("User already exists")
    org = _require_org(org_id)

    user = User(email=email, is_active=True, org_id=org.id)
    user.set_password(password)
    db.session.add(user)
    db.session.flush()

    db.session.add(OrgMembership(org_id=org.id, user_id=user.id, role=role))
    db.session.commit()

    click.echo(f"User created id={user.id} email={user.email} org_id={org.id} role={role}")

@click.group()
def members():
    """Org membership role ops."""

@members.command("promote")
@click.option("--org-id", type=int, required=True)
@click.option("--email", required=True)
@click.option("--role", type=click.Choice([ROLE_ADMIN, ROLE_OWNER]), required=True)
@with_appcontext
def members_promote(org_id, email, role):
    user = db.session.query(User).filter_by(email=email).one_or_none()
    if not user:
        raise click.ClickException("User not found")
    m = db.session.query(OrgMembership).filter_by(org_id=org_id, user_id=user.id).one_or_none()
    if not m:
        m = OrgMembership(org_id=org_id, user_id=user.id, role=role)
        db.session.add(m)
    else:
        m.role = role
    db.session.commit()
    click.echo(f"Promoted {email} in org {org_id} to {role}")

@members.command("demote")
@click.option("--org-id", type=int, required=True)
@click.option("--email", required=True)
@with_appcontext
def members_demote(org_id, email):
    user = db.session.query(User).filter_by(email=email).one_or_none()
    if not user:
        raise click.ClickException("User not found")

    m = db.session.query(OrgMembership).filter_by(org_id=org_id, user_id=user.id).one_or_none()
    if not m:
        raise click.ClickException("Membership not found")

    # Safety rail: cannot demote last owner
    owners = db.session.query(OrgMembership).filter_by(org_id=org_id, role=ROLE_OWNER).count()
    if m.role == ROLE_OWNER and owners <= 1:
        raise click.ClickException("Refused: cannot demote the last owner of this org")

    m.role = ROLE_MEMBER
    db.session.commit()
    click.echo(f"Demoted {email} in org {org_id} to member")


# ---------------------------------------------------------------------------
# Library catalog maintenance
# ---------------------------------------------------------------------------

@click.group()
def library_cli():
    """Library catalog maintenance."""

@library_cli.command("dedupe")
@click.option("--org-id", type=int, required=True)
@click.option("--level", type=click.IntRange(1, 4), default=None,
              help="Only this level (1=division .. 4=item); all levels when omitted")
@with_appcontext
def library_dedupe(org_id, level):
    """Merge same-named siblings into the oldest row."""
    _require_org(org_id)
    try:
        if level is None:
            reports = dedupe.reconcile_library(db.session, org_id)
        else:
            reports = [dedupe.reconcile_duplicates(db.session, org_id, level)]
    except ServiceError as e:
        raise click.ClickException(f"Rolled back: {e}")
    for r in reports:
        click.echo(
            f"{r.level.label}: groups={r.groups} removed={r.removed} "
            f"reassigned={r.reassigned} recoded={r.recoded}"
        )

@library_cli.command("resort")
@click.option("--org-id", type=int, required=True)
@with_appcontext
def library_resort(org_id):
    """Recompute sort_order from codes."""
    _require_org(org_id)
    changed = library.resort(db.session, org_id)
    db.session.commit()
    click.echo(f"Resorted org {org_id}: {changed} row(s) updated")

@library_cli.command("import")
@click.option("--org-id", type=int, required=True)
@click.option("--dry-run", is_flag=True, help="Validate and report; write nothing")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@with_appcontext
def library_import_cmd(org_id, dry_run, path):
    """Load divisions/sections/assemblies/items from an .xlsx or .csv sheet."""
    _require_org(org_id)
    try:
        df = library_import.load_library_frame(path, max_rows=current_app.config.get("LIBRARY_IMPORT_MAX_ROWS"))
        result = library_import.import_library_frame(db.session, org_id, df)
    except ServiceError as e:
        db.session.rollback()
        raise click.ClickException(str(e))
    except Exception:
        db.session.rollback()
        raise
    if dry_run:
        db.session.rollback()
    else:
        db.session.commit()
    click.echo(
        f"{'Dry run: ' if dry_run else ''}inserted={result.inserted} "
        f"updated={result.updated} skipped={result.skipped}"
    )
    for line in result.errors:
        click.echo(f"  {line}", err=True)

@library_cli.command("next-code")
@click.option("--org-id", type=int, required=True)
@click.option("--level", type=click.IntRange(1, 4), required=True)
@click.option("--parent", "parent_code", default=None, help="Parent code, e.g. 02.10")
@with_appcontext
def library_next_code(org_id, level, parent_code):
    """Print the code the next create would get."""
    try:
        click.echo(library.generate_code(db.session, org_id, codes.Level(level), parent_code))
    except ServiceError as e:
        raise click.ClickException(str(e))


def register_cli(app):
    app.cli.add_command(bootstrap)
    app.cli.add_command(users)
    app.cli.add_command(members)
    app.cli.add_command(library_cli, name="library")
