"""Quantitative scope of work agreed for a project (one row per project)."""
from __future__ import annotations

from datetime import datetime

from database import db


class ProjectScope(db.Model):
    __tablename__ = "project_scope"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    contact_email = db.Column(db.String(255), nullable=True)
    music_minutes = db.Column(db.Integer, nullable=False, default=0)
    dialogue_hours = db.Column(db.Float, nullable=False, default=0)
    sound_design_hours = db.Column(db.Float, nullable=False, default=0)
    mix_hours = db.Column(db.Float, nullable=False, default=0)
    revision_hours = db.Column(db.Float, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    project = db.relationship("Project", back_populates="scope")

    def to_dict(self) -> dict[str, object]:
        return {
            "project_id": self.project_id,
            "contact_email": self.contact_email,
            "music_minutes": self.music_minutes,
            "dialogue_hours": self.dialogue_hours,
            "sound_design_hours": self.sound_design_hours,
            "mix_hours": self.mix_hours,
            "revision_hours": self.revision_hours,
        }

    def __repr__(self):
        return f"<ProjectScope project={self.project_id}>"
