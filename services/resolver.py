"""Match legacy project references against the projects that actually exist."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import select

from database import db
from models.project import Project
from services.errors import ResolutionFailure


def coerce_project_id(value: Any) -> Optional[int]:
    """Return ``value`` as an int id, or None when it cannot be one."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return int(text)
    return None


@dataclass(frozen=True)
class ProjectSnapshot:
    """Immutable view of (id, name) for every known project."""

    ids: frozenset[int]
    ids_by_name: Mapping[str, int]

    @classmethod
    def from_rows(cls, rows: Iterable[tuple[int, str]]) -> "ProjectSnapshot":
        ids: set[int] = set()
        by_name: dict[str, int] = {}
        for project_id, name in rows:
            ids.add(project_id)
            # Several projects may share a name; the lowest id wins.
            if name not in by_name or project_id < by_name[name]:
                by_name[name] = project_id
        return cls(ids=frozenset(ids), ids_by_name=dict(by_name))

    @classmethod
    def load(cls, session=None) -> "ProjectSnapshot":
        """Read every project once from the store."""

        session = session or db.session
        rows = session.execute(select(Project.id, Project.name)).all()
        return cls.from_rows((row.id, row.name) for row in rows)

    def __len__(self) -> int:
        return len(self.ids)


class ProjectResolver:
    """Identifier first, then exact display name. Pure over its snapshot."""

    def __init__(self, snapshot: ProjectSnapshot):
        self.snapshot = snapshot

    def resolve(self, candidate_id: Any = None, name: Optional[str] = None) -> int:
        project_id = coerce_project_id(candidate_id)
        if project_id is not None and project_id in self.snapshot.ids:
            return project_id
        if isinstance(name, str) and name in self.snapshot.ids_by_name:
            return self.snapshot.ids_by_name[name]
        raise ResolutionFailure(identifier=candidate_id, name=name)
