from __future__ import annotations

from sqlalchemy import CheckConstraint, Index, func, text, true

from costlib.extensions import db

"""
Library catalog items (level 4): critical indexes & constraints (doc only)

• library_items
  - uq_library_items_org_code_active: UNIQUE INDEX on (org_id, code) WHERE is_active

  - ck_library_items_status: status ∈ {draft, confirmed, actual}
    Confirmed/actual items guard their ancestors against casual deletion.

  - ck_library_items_wastage_range: 0 ≤ wastage_percentage ≤ 100
"""

ITEM_STATUS_DRAFT = "draft"
ITEM_STATUS_CONFIRMED = "confirmed"
ITEM_STATUS_ACTUAL = "actual"
ITEM_STATUSES = (ITEM_STATUS_DRAFT, ITEM_STATUS_CONFIRMED, ITEM_STATUS_ACTUAL)


class LibraryItem(db.Model):
    __tablename__ = "library_items"
    __allow_unmapped__ = True

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False)
    assembly_id = db.Column(
        db.Integer, db.ForeignKey("assemblies.id", ondelete="RESTRICT"), nullable=False
    )

    code = db.Column(db.String(11), nullable=False)  # "DD.DD.DD.DD"
    name = db.Column(db.Text, nullable=False)
    description = db.Column(db.Text, nullable=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    # Descriptive attributes; material/labor/equipment factors live elsewhere
    unit = db.Column(db.String(32), nullable=False)
    specifications = db.Column(db.Text, nullable=True)
    wastage_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0, server_default=text("0"))
    productivity_notes = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=ITEM_STATUS_DRAFT, server_default=ITEM_STATUS_DRAFT)

    is_active = db.Column(db.Boolean, nullable=False, default=True, server_default=true())
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())


    __table_args__ = (
        Index(
            "uq_library_items_org_code_active",
            org_id,
            code,
            unique=True,
            postgresql_where=text("is_active = true"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_library_items_org_sort", org_id, sort_order),
        Index("ix_library_items_assembly", assembly_id),
        CheckConstraint(
            "status IN ('draft','confirmed','actual')",
            name="ck_library_items_status",
        ),
        CheckConstraint(
            "wastage_percentage >= 0 AND wastage_percentage <= 100",
            name="ck_library_items_wastage_range",
        ),
    )

    def __repr__(self) -> str:
        return f"<LibraryItem id={self.id} code={self.code!r} unit={self.unit!r} status={self.status!r} active={self.is_active}>"
