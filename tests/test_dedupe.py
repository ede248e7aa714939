import pytest

from costlib.models import Org, Division, Section, Assembly, LibraryItem
from costlib.services import codes, dedupe
from costlib.services.codes import Level


def _org(session):
    org = Org(name="Dupes Inc")
    session.add(org); session.commit()
    return org.id


def _add(session, model, org_id, code, name, **kw):
    row = model(org_id=org_id, code=code, name=name, sort_order=codes.sort_key(code), **kw)
    session.add(row); session.flush()
    return row


@pytest.fixture()
def duplicated(ctx):
    """Two 'Electrical' divisions; the younger one owns a section with a subtree."""
    org_id = _org(ctx)
    keep = _add(ctx, Division, org_id, "01", "Electrical")
    dup = _add(ctx, Division, org_id, "02", "Electrical")
    _add(ctx, Division, org_id, "03", "Plumbing")
    wiring = _add(ctx, Section, org_id, "01.10", "Wiring", division_id=keep.id)
    lighting = _add(ctx, Section, org_id, "02.10", "Lighting", division_id=dup.id)
    asm = _add(ctx, Assembly, org_id, "02.10.10", "Fixtures", section_id=lighting.id)
    _add(ctx, LibraryItem, org_id, "02.10.10.01", "Downlight", assembly_id=asm.id, unit="ea")
    ctx.commit()
    return org_id, keep.id, dup.id, wiring.id, lighting.id


def test_find_duplicate_groups(ctx, duplicated):
    org_id, keep_id, dup_id, _, _ = duplicated
    groups = dedupe.find_duplicate_groups(ctx, org_id, Level.DIVISION)
    assert len(groups) == 1
    g = groups[0]
    assert g.name == "Electrical"
    assert g.canonical_id == keep_id
    assert g.duplicate_ids == [dup_id]


def test_same_name_under_different_parents_is_not_a_duplicate(ctx, duplicated):
    org_id, keep_id, dup_id, _, _ = duplicated
    _add(ctx, Section, org_id, "03.10", "Wiring", division_id=ctx.query(Division).filter_by(code="03").one().id)
    ctx.commit()
    assert dedupe.find_duplicate_groups(ctx, org_id, Level.SECTION) == []


def test_reconcile_moves_children_and_recodes_subtree(ctx, duplicated):
    org_id, keep_id, dup_id, wiring_id, lighting_id = duplicated
    report = dedupe.reconcile_duplicates(ctx, org_id, Level.DIVISION)

    assert report.groups == 1 and report.removed == 1
    assert report.reassigned == 1
    assert report.recoded == 3  # section, assembly, item
    assert report.removed_codes == ["02"]
    assert ctx.get(Division, dup_id) is None

    lighting = ctx.get(Section, lighting_id)
    assert lighting.division_id == keep_id
    assert lighting.code == "01.20"
    asm = ctx.query(Assembly).filter_by(section_id=lighting_id).one()
    item = ctx.query(LibraryItem).filter_by(assembly_id=asm.id).one()
    assert (asm.code, item.code) == ("01.20.10", "01.20.10.01")
    assert item.sort_order == codes.sort_key("01.20.10.01")


def test_no_child_left_pointing_at_deleted_row(ctx, duplicated):
    org_id = duplicated[0]
    dedupe.reconcile_duplicates(ctx, org_id, Level.DIVISION)
    division_ids = {d.id for d in ctx.query(Division).all()}
    for s in ctx.query(Section).all():
        assert s.division_id in division_ids
        parent = ctx.get(Division, s.division_id)
        assert codes.validate_hierarchy(s.code, parent.code)


def test_inactive_children_are_repointed(ctx, duplicated):
    org_id, keep_id, dup_id, _, _ = duplicated
    old = _add(ctx, Section, org_id, "02.90", "Retired", division_id=dup_id, is_active=False)
    ctx.commit()
    dedupe.reconcile_duplicates(ctx, org_id, Level.DIVISION)
    assert ctx.get(Section, old.id).division_id == keep_id


def test_reconcile_library_runs_every_level(ctx, duplicated):
    org_id, keep_id, dup_id, wiring_id, lighting_id = duplicated
    # After the division merge both Wiring sections sit under "01"
    dup_div = ctx.get(Division, dup_id)
    _add(ctx, Section, org_id, "02.20", "Wiring", division_id=dup_div.id)
    ctx.commit()

    reports = dedupe.reconcile_library(ctx, org_id)
    by_level = {r.level: r for r in reports}
    assert by_level[Level.DIVISION].removed == 1
    assert by_level[Level.SECTION].removed == 1
    names = sorted(s.name for s in ctx.query(Section).filter_by(org_id=org_id, is_active=True))
    assert names == ["Lighting", "Wiring"]
    assert ctx.get(Section, wiring_id) is not None


def test_failure_rolls_back_everything(ctx, duplicated, monkeypatch):
    org_id, keep_id, dup_id, _, lighting_id = duplicated

    def boom(*a, **kw):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(dedupe, "_recode_subtree", boom)
    with pytest.raises(RuntimeError):
        dedupe.reconcile_duplicates(ctx, org_id, Level.DIVISION)
    assert ctx.get(Division, dup_id) is not None
    assert ctx.get(Section, lighting_id).code == "02.10"


def test_nothing_to_do(ctx):
    org_id = _org(ctx)
    report = dedupe.reconcile_duplicates(ctx, org_id, Level.ITEM)
    assert report.to_dict()["groups"] == 0
