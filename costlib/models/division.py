from __future__ import annotations

from typing import List

from sqlalchemy import Index, func, text, true

from costlib.extensions import db

"""
Library catalog divisions (level 1): critical indexes & constraints (doc only)

• divisions
  - uq_divisions_org_code_active: UNIQUE INDEX on (org_id, code) WHERE is_active
    Rationale: a code is claimed only by live rows; soft-deleted rows free it for reuse.

  - ix_divisions_org_sort: (org_id, sort_order) for ordered hierarchy browse.

Notes:
- Partial-unique constraints are represented as UNIQUE INDEXes with both
  postgresql_where and sqlite_where so the test database enforces the same rule.
"""


class Division(db.Model):
    __tablename__ = "divisions"
    __allow_unmapped__ = True

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False)

    code = db.Column(db.String(2), nullable=False)  # "DD"
    name = db.Column(db.Text, nullable=False)
    description = db.Column(db.Text, nullable=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True, server_default=true())
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    sections: List["Section"] = db.relationship(
        "Section",
        backref="division",
        lazy="select",
        order_by="Section.sort_order",
        cascade="save-update, merge",
    )

    __table_args__ = (
        Index(
            "uq_divisions_org_code_active",
            org_id,
            code,
            unique=True,
            postgresql_where=text("is_active = true"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_divisions_org_sort", org_id, sort_order),
    )

    def __repr__(self) -> str:
        return f"<Division id={self.id} code={self.code!r} name={self.name!r} active={self.is_active}>"
