from __future__ import annotations

from typing import List

from sqlalchemy import Index, func, text, true

from costlib.extensions import db


class Section(db.Model):
    """Level 2. Code is the parent division code plus one segment ("DD.DD")."""

    __tablename__ = "sections"
    __allow_unmapped__ = True

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False)
    division_id = db.Column(
        db.Integer, db.ForeignKey("divisions.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    code = db.Column(db.String(5), nullable=False)
    name = db.Column(db.Text, nullable=False)
    description = db.Column(db.Text, nullable=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True, server_default=true())
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    assemblies: List["Assembly"] = db.relationship(
        "Assembly",
        backref="section",
        lazy="select",
        order_by="Assembly.sort_order",
        cascade="save-update, merge",
    )

    # Same partial-unique strategy as divisions (see division.py).
    __table_args__ = (
        Index(
            "uq_sections_org_code_active",
            org_id,
            code,
            unique=True,
            postgresql_where=text("is_active = true"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_sections_org_sort", org_id, sort_order),
    )

    def __repr__(self) -> str:
        return f"<Section id={self.id} code={self.code!r} division_id={self.division_id} active={self.is_active}>"
