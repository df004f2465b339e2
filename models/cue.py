"""Music cue tracked against a project.

Cue numbers are assigned by people, so they only need to be unique inside
their project. A cue without a number is allowed.
"""
from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from database import db


class CueStatus(StrEnum):
    """Writing progress of a cue."""

    TO_WRITE = "to-write"
    WRITTEN = "written"
    REVISIONS = "revisions"
    APPROVED = "approved"
    COMPLETE = "complete"


class Cue(db.Model):
    __tablename__ = "cues"

    __table_args__ = (
        db.UniqueConstraint("project_id", "cue_number", name="uq_cue_project_number"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    cue_number = db.Column(db.String(64), nullable=True)
    title = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(20), nullable=False, default=CueStatus.TO_WRITE.value)
    duration = db.Column(db.String(32), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    project = db.relationship("Project", back_populates="cues")

    @property
    def status_enum(self) -> CueStatus:
        return CueStatus(self.status)

    def __repr__(self):
        return f"<Cue {self.cue_number} project={self.project_id}>"
