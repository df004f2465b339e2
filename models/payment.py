"""Payment received against an invoice.

project_id duplicates invoice.project_id so project-scoped queries avoid a
join. It is always copied from the invoice when the row is written.
"""
from __future__ import annotations

from datetime import datetime

from database import db


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(
        db.Integer,
        db.ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount = db.Column(db.Float, nullable=False, default=0)
    payment_date = db.Column(db.String(32), nullable=True)
    payment_method = db.Column(db.String(64), nullable=True)
    payment_type = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    invoice = db.relationship("Invoice", back_populates="payments")
    project = db.relationship("Project", back_populates="payments")

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"<Payment invoice={self.invoice_id} amount={self.amount}>"
