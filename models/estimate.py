"""Point-in-time cost computation for a project.

Estimates are append-only: they are created and deleted, never edited.
"""
from __future__ import annotations

from datetime import datetime

from database import db


class Estimate(db.Model):
    __tablename__ = "estimates"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    runtime = db.Column(db.String(64), nullable=True)
    music_minutes = db.Column(db.Integer, nullable=False, default=0)
    dialogue_hours = db.Column(db.Float, nullable=False, default=0)
    sound_design_hours = db.Column(db.Float, nullable=False, default=0)
    mix_hours = db.Column(db.Float, nullable=False, default=0)
    revision_hours = db.Column(db.Float, nullable=False, default=0)
    post_days = db.Column(db.Float, nullable=False, default=0)
    bundle_discount = db.Column(db.Boolean, nullable=False, default=False)
    music_cost = db.Column(db.Float, nullable=False, default=0)
    post_cost = db.Column(db.Float, nullable=False, default=0)
    discount_amount = db.Column(db.Float, nullable=False, default=0)
    total_cost = db.Column(db.Float, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    project = db.relationship("Project", back_populates="estimates")

    def __repr__(self):
        return f"<Estimate project={self.project_id} total={self.total_cost}>"
