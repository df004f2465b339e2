"""Invoice issued for a project, with its serialized line items."""
from __future__ import annotations

import json
from datetime import datetime
from enum import StrEnum

from database import db


class InvoiceStatus(StrEnum):
    """Billing state of an invoice."""

    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"


class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    invoice_number = db.Column(db.String(64), unique=True, nullable=True)
    amount = db.Column(db.Float, nullable=False, default=0)
    deposit_amount = db.Column(db.Float, nullable=False, default=0)
    deposit_percentage = db.Column(db.Float, nullable=False, default=0)
    final_amount = db.Column(db.Float, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default=InvoiceStatus.DRAFT.value)
    due_date = db.Column(db.String(32), nullable=True)
    issue_date = db.Column(db.String(32), nullable=True)
    line_items = db.Column(db.Text, nullable=False, default="[]")
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    project = db.relationship("Project", back_populates="invoices")
    payments = db.relationship(
        "Payment",
        back_populates="invoice",
        lazy=True,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def status_enum(self) -> InvoiceStatus:
        return InvoiceStatus(self.status)

    @status_enum.setter
    def status_enum(self, value: InvoiceStatus) -> None:
        self.status = value.value

    @property
    def line_item_list(self) -> list:
        """Return the decoded line items, or an empty list when unreadable."""

        try:
            items = json.loads(self.line_items or "[]")
        except (TypeError, ValueError):
            return []
        return items if isinstance(items, list) else []

    def __repr__(self):
        return f"<Invoice {self.invoice_number} project={self.project_id}>"
