"""A Project is the root of ownership for every consolidated record.

A Project has at most one ProjectScope
A Project can have many Estimates, Cues and Invoices
Payments belong to an Invoice and, redundantly, to the Invoice's Project
Deleting a Project deletes everything it owns

"""
from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from database import db


class ProjectStatus(StrEnum):
    """Kanban lifecycle column for a project."""

    PROSPECTS = "prospects"
    ACTIVE = "active"
    HOLD = "hold"
    COMPLETED = "completed"


class Project(db.Model):
    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)
    client_name = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(20), nullable=False, default=ProjectStatus.PROSPECTS.value)
    notes = db.Column(db.Text, nullable=True)
    pinned = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    scope = db.relationship(
        "ProjectScope",
        back_populates="project",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    estimates = db.relationship(
        "Estimate",
        back_populates="project",
        lazy=True,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    cues = db.relationship(
        "Cue",
        back_populates="project",
        lazy=True,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    invoices = db.relationship(
        "Invoice",
        back_populates="project",
        lazy=True,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    payments = db.relationship(
        "Payment",
        back_populates="project",
        lazy=True,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def status_enum(self) -> ProjectStatus:
        return ProjectStatus(self.status)

    @status_enum.setter
    def status_enum(self, value: ProjectStatus) -> None:
        self.status = value.value

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "client_name": self.client_name,
            "status": self.status,
            "notes": self.notes,
            "pinned": self.pinned,
        }

    def __repr__(self):
        return f"<Project {self.name}>"
