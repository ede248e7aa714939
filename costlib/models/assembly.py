from __future__ import annotations

from typing import List

from sqlalchemy import Index, func, text, true

from costlib.extensions import db

"""
Assembly models: critical indexes & constraints (doc only)

• assemblies
  - uq_assemblies_org_code_active: UNIQUE INDEX on (org_id, code) WHERE is_active
    Rationale: live codes are unique per tenant; inactive history may repeat them.

  - ix_assemblies_org_sort / ix_assemblies_section:
    Helper BTREE indexes for ordered browse and parent joins.
"""


class Assembly(db.Model):
    __tablename__ = "assemblies"
    __allow_unmapped__ = True

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False)
    section_id = db.Column(
        db.Integer, db.ForeignKey("sections.id", ondelete="RESTRICT"), nullable=False
    )

    code = db.Column(db.String(8), nullable=False)  # "DD.DD.DD"
    name = db.Column(db.Text, nullable=False)
    description = db.Column(db.Text, nullable=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True, server_default=true())
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    # relationships
    items: List["LibraryItem"] = db.relationship(
        "LibraryItem",
        backref="assembly",
        lazy="select",
        order_by="LibraryItem.sort_order",
        cascade="save-update, merge",
    )

    __table_args__ = (
        Index(
            "uq_assemblies_org_code_active",
            org_id,
            code,
            unique=True,
            postgresql_where=text("is_active = true"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_assemblies_org_sort", org_id, sort_order),
        Index("ix_assemblies_section", section_id),
    )

    def __repr__(self) -> str:
        return f"<Assembly id={self.id} code={self.code!r} name={self.name!r} active={self.is_active}>"
