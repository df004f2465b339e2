"""Turn loosely-typed legacy records into column values for the entity store.

Every kind has its own explicit mapping function and every column it produces
has a fallback, so a record is never rejected for missing optional data:
numbers fall back to zero, text to None, and statuses to their initial state.
Fields the mapping does not know about are ignored.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Optional

from models.cue import CueStatus
from models.invoice import InvoiceStatus
from models.project import ProjectStatus

logger = logging.getLogger(__name__)


class RecordKind(StrEnum):
    """Legacy record kinds, in the order they are consolidated."""

    PROJECTS = "projects"
    SCOPE = "scope"
    ESTIMATES = "estimates"
    CUES = "cues"
    INVOICES = "invoices"
    PAYMENTS = "payments"


# localStorage key -> record kind, as written by the old browser clients.
# Several tools wrote the same kind under different keys; their records are
# concatenated.
LEGACY_STORAGE_KEYS = {
    "kanban-projects": RecordKind.PROJECTS,
    "project-scope": RecordKind.SCOPE,
    "logged-estimates": RecordKind.ESTIMATES,
    "cue-tracker-cues": RecordKind.CUES,
    "invoices": RecordKind.INVOICES,
    "logged-invoices": RecordKind.INVOICES,
    # The invoice tracker kept its invoices under this name.
    "outstanding-payments": RecordKind.INVOICES,
    "payments": RecordKind.PAYMENTS,
    "alternatone-payments": RecordKind.PAYMENTS,
}

# The cue tracker's own project list ({id, title}). Read only to name the
# projects behind cue keys, never consolidated itself.
CUE_PROJECTS_KEY = "cue-projects"

CLEARABLE_STORAGE_KEYS = (*LEGACY_STORAGE_KEYS, CUE_PROJECTS_KEY)

# Status spellings used by the old boards, per target enum.
STATUS_ALIASES = {
    ProjectStatus: {
        "prospect": "prospects",
        "proposal-sent": "prospects",
        "in-progress": "active",
        "in-process": "active",
        "in-review": "active",
        "invoiced": "active",
        "on-hold": "hold",
        "paused": "hold",
        "paid": "completed",
        "complete": "completed",
        "done": "completed",
        "finished": "completed",
    },
    CueStatus: {
        "todo": "to-write",
        "revision": "revisions",
        "completed": "complete",
        "done": "complete",
    },
    InvoiceStatus: {
        "pending": "sent",
        "unpaid": "sent",
        "outstanding": "sent",
        "overdue": "sent",
    },
}


@dataclass(frozen=True)
class ProjectRef:
    identifier: Any = None
    name: Optional[str] = None


@dataclass(frozen=True)
class InvoiceRef:
    identifier: Any = None
    number: Optional[str] = None

    def __str__(self) -> str:
        if self.number:
            return f"#{self.number}"
        if self.identifier is not None:
            return f"ID {self.identifier}"
        return "(none)"


@dataclass
class MappedRecord:
    kind: RecordKind
    record_ref: str
    fields: dict[str, Any]
    project_ref: ProjectRef = field(default_factory=ProjectRef)
    invoice_ref: Optional[InvoiceRef] = None
    legacy_id: Any = None
    from_notes: bool = False


# Coercion helpers
# ------------------------------


def _as_record(record: Any) -> Mapping[str, Any]:
    return record if isinstance(record, Mapping) else {}


def _first(record: Mapping[str, Any], *names: str) -> Any:
    """Return the first present, non-empty value among the candidate keys."""

    for name in names:
        value = record.get(name)
        if value is not None and value != "":
            return value
    return None


def _number(value: Any, default: float = 0.0) -> float:
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().replace(",", ""))
        except ValueError:
            return default
    return default


def _integer(value: Any, default: int = 0) -> int:
    return int(round(_number(value, float(default))))


def _text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, (int, float)):
        return str(value)
    return None


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _status(value: Any, enum_cls: type[StrEnum], default: StrEnum) -> str:
    """Normalise a free-form status ("To Write", "to_write") onto ``enum_cls``."""

    text = _text(value)
    if text is None:
        return default.value
    normalised = "-".join(text.lower().replace("_", " ").split())
    normalised = STATUS_ALIASES.get(enum_cls, {}).get(normalised, normalised)
    try:
        return enum_cls(normalised).value
    except ValueError:
        logger.debug("Unknown %s %r, using %s", enum_cls.__name__, value, default.value)
        return default.value


def _line_items(value: Any) -> str:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return "[]"
    if not isinstance(value, list):
        return "[]"
    return json.dumps(value, default=str)


def _label(kind: RecordKind, index: Any, detail: Optional[str] = None) -> str:
    ref = f"{kind.value}[{index}]"
    return f'{ref} "{detail}"' if detail else ref


# Per-kind mappings
# ------------------------------


def map_project(record: Any, index: int) -> MappedRecord:
    record = _as_record(record)
    name = _text(_first(record, "name", "title", "projectName"))
    return MappedRecord(
        kind=RecordKind.PROJECTS,
        record_ref=_label(RecordKind.PROJECTS, index, name),
        legacy_id=record.get("id"),
        fields={
            "name": name,
            "client_name": _text(_first(record, "clientName", "client_name", "client")),
            "status": _status(record.get("status"), ProjectStatus, ProjectStatus.PROSPECTS),
            "notes": _text(record.get("notes")),
            "pinned": _flag(record.get("pinned")),
        },
    )


def map_scope(record: Any, index: Any) -> MappedRecord:
    record = _as_record(record)
    name = _text(_first(record, "projectName", "name"))
    return MappedRecord(
        kind=RecordKind.SCOPE,
        record_ref=_label(RecordKind.SCOPE, index, name),
        project_ref=ProjectRef(_first(record, "projectId", "project_id", "id"), name),
        fields={
            "contact_email": _text(_first(record, "contactEmail", "contact_email")),
            "music_minutes": _integer(_first(record, "musicMinutes", "music_minutes")),
            "dialogue_hours": _number(_first(record, "dialogueHours", "dialogue_hours")),
            "sound_design_hours": _number(_first(record, "soundDesignHours", "sound_design_hours")),
            "mix_hours": _number(_first(record, "mixHours", "mix_hours")),
            "revision_hours": _number(_first(record, "revisionHours", "revision_hours")),
        },
    )


def map_estimate(record: Any, index: int) -> MappedRecord:
    record = _as_record(record)
    name = _text(_first(record, "projectName", "project_name"))
    # The estimate logger stored the project id in the record's own "id".
    candidate = _first(record, "projectId", "project_id", "id")
    return MappedRecord(
        kind=RecordKind.ESTIMATES,
        record_ref=_label(RecordKind.ESTIMATES, index, name),
        project_ref=ProjectRef(candidate, name),
        fields={
            "runtime": _text(record.get("runtime")),
            "music_minutes": _integer(_first(record, "musicMinutes", "music_minutes")),
            "dialogue_hours": _number(_first(record, "dialogueHours", "dialogue_hours")),
            "sound_design_hours": _number(_first(record, "soundDesignHours", "sound_design_hours")),
            "mix_hours": _number(_first(record, "mixHours", "mix_hours")),
            "revision_hours": _number(_first(record, "revisionHours", "revision_hours")),
            "post_days": _number(_first(record, "postDays", "post_days")),
            "bundle_discount": _flag(_first(record, "bundleDiscount", "bundle_discount")),
            "music_cost": _number(_first(record, "musicCost", "music_cost")),
            "post_cost": _number(_first(record, "postCost", "post_cost")),
            "discount_amount": _number(_first(record, "discountAmount", "discount_amount")),
            "total_cost": _number(_first(record, "total", "totalCost", "total_cost")),
        },
    )


def map_cue(
    record: Any, project_key: Any, index: int, project_name: Optional[str] = None
) -> MappedRecord:
    """Map one cue stored under ``project_key`` in the legacy cue tracker.

    ``project_name`` is the cue tracker's title for ``project_key``; a name on
    the cue itself wins.
    """

    record = _as_record(record)
    number = _text(_first(record, "number", "cue_number", "cueNumber"))
    ref = f"{RecordKind.CUES.value}[{project_key}][{index}]"
    return MappedRecord(
        kind=RecordKind.CUES,
        record_ref=f'{ref} "{number}"' if number else ref,
        project_ref=ProjectRef(project_key, _text(record.get("projectName")) or _text(project_name)),
        fields={
            "cue_number": number,
            "title": _text(record.get("title")),
            "status": _status(record.get("status"), CueStatus, CueStatus.TO_WRITE),
            "duration": _text(record.get("duration")),
            "notes": _text(record.get("notes")),
        },
    )


def map_invoice(record: Any, index: int) -> MappedRecord:
    record = _as_record(record)
    name = _text(_first(record, "projectName", "project_name"))
    number = _text(_first(record, "invoiceNumber", "invoice_number"))
    return MappedRecord(
        kind=RecordKind.INVOICES,
        record_ref=_label(RecordKind.INVOICES, index, number or name),
        project_ref=ProjectRef(_first(record, "projectId", "project_id"), name),
        legacy_id=record.get("id"),
        fields={
            "invoice_number": number,
            "amount": _number(record.get("amount")),
            "deposit_amount": _number(_first(record, "depositAmount", "deposit_amount")),
            "deposit_percentage": _number(_first(record, "depositPercentage", "deposit_percentage")),
            "final_amount": _number(_first(record, "finalAmount", "final_amount")),
            "status": _status(record.get("status"), InvoiceStatus, InvoiceStatus.DRAFT),
            "due_date": _text(_first(record, "dueDate", "due_date")),
            "issue_date": _text(_first(record, "issueDate", "issue_date")),
            "line_items": _line_items(_first(record, "lineItems", "line_items")),
        },
    )


def map_payment(record: Any, index: int) -> MappedRecord:
    """Map a payment. Any project reference it carries is deliberately dropped."""

    record = _as_record(record)
    invoice_ref = InvoiceRef(
        identifier=_first(record, "invoiceId", "invoice_id"),
        number=_text(_first(record, "invoiceNumber", "invoice_number")),
    )
    method = _text(_first(record, "paymentMethod", "payment_method", "method"))
    return MappedRecord(
        kind=RecordKind.PAYMENTS,
        record_ref=_label(RecordKind.PAYMENTS, index, invoice_ref.number),
        invoice_ref=invoice_ref,
        fields={
            "amount": _number(record.get("amount")),
            "payment_date": _text(_first(record, "paymentDate", "payment_date", "date")),
            "payment_method": method,
            "payment_type": _text(_first(record, "paymentType", "payment_type")) or method,
            "notes": _text(record.get("notes")),
        },
    )


def scope_from_notes(project_id: int, project_name: str, notes: Optional[str]) -> Optional[MappedRecord]:
    """Recover scope data that older clients serialised into ``projects.notes``.

    Returns None when the notes are plain text or JSON without scope fields.
    """

    if not notes:
        return None
    try:
        data = json.loads(notes)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    if data.get("musicMinutes") is None and not data.get("contactEmail"):
        return None
    mapped = map_scope({**data, "projectId": project_id}, f"notes:{project_id}")
    mapped.record_ref = _label(RecordKind.SCOPE, f"notes:{project_id}", project_name)
    mapped.from_notes = True
    return mapped


# Batches
# ------------------------------


def _decode(dump: Mapping[str, Any], key: str, expected: type) -> Any:
    value = dump.get(key)
    if value is None:
        return expected()
    if isinstance(value, (str, bytes)):
        try:
            value = json.loads(value)
        except ValueError:
            logger.warning("Ignoring legacy key %r: value is not valid JSON", key)
            return expected()
    if not isinstance(value, expected):
        logger.warning(
            "Ignoring legacy key %r: expected %s, got %s",
            key,
            expected.__name__,
            type(value).__name__,
        )
        return expected()
    return value


@dataclass
class LegacyBatch:
    """Raw legacy records, partitioned by kind."""

    projects: list = field(default_factory=list)
    scope: list = field(default_factory=list)
    estimates: list = field(default_factory=list)
    cues: dict = field(default_factory=dict)
    invoices: list = field(default_factory=list)
    payments: list = field(default_factory=list)
    # Cue tracker project id -> project title.
    cue_project_names: dict = field(default_factory=dict)

    @classmethod
    def from_local_storage(cls, dump: Mapping[str, Any]) -> "LegacyBatch":
        """Build a batch from a browser localStorage export.

        Values may still be the JSON strings localStorage holds. Keys that are
        missing or unreadable contribute no records; a known key that is
        present but yields nothing is logged.
        """

        records: dict[RecordKind, list] = {kind: [] for kind in RecordKind}
        for key, kind in LEGACY_STORAGE_KEYS.items():
            if key not in dump or kind == RecordKind.CUES:
                continue
            values = _decode(dump, key, list)
            if not values:
                logger.warning("Legacy key %r contributed no %s records", key, kind.value)
            records[kind].extend(values)

        cues = _decode_cues(dump)
        if "cue-tracker-cues" in dump and not any(cues.values()):
            logger.warning("Legacy key 'cue-tracker-cues' contributed no cues records")

        return cls(
            projects=records[RecordKind.PROJECTS],
            scope=records[RecordKind.SCOPE],
            estimates=records[RecordKind.ESTIMATES],
            cues=cues,
            invoices=records[RecordKind.INVOICES],
            payments=records[RecordKind.PAYMENTS],
            cue_project_names=_decode_cue_projects(dump),
        )

    def count(self, kind: RecordKind) -> int:
        if kind == RecordKind.CUES:
            return sum(len(cues) for cues in self.cues.values())
        return len(getattr(self, kind.value))

    def __len__(self) -> int:
        return sum(self.count(kind) for kind in RecordKind)


def _decode_cues(dump: Mapping[str, Any]) -> dict[str, list]:
    cues = dump.get("cue-tracker-cues")
    if isinstance(cues, (str, bytes)):
        try:
            cues = json.loads(cues)
        except ValueError:
            logger.warning("Ignoring legacy key 'cue-tracker-cues': value is not valid JSON")
            return {}
    if isinstance(cues, list):
        grouped: dict[str, list] = {}
        for cue in cues:
            project_key = _as_record(cue).get("projectId")
            grouped.setdefault(str(project_key), []).append(cue)
        return grouped
    if not isinstance(cues, dict):
        if cues is not None:
            logger.warning("Ignoring legacy key 'cue-tracker-cues': unexpected %s", type(cues).__name__)
        return {}
    return {key: value if isinstance(value, list) else [] for key, value in cues.items()}


def _decode_cue_projects(dump: Mapping[str, Any]) -> dict[str, str]:
    names = {}
    for project in _decode(dump, CUE_PROJECTS_KEY, list):
        project = _as_record(project)
        identifier = project.get("id")
        title = _text(_first(project, "title", "name"))
        if identifier is not None and title:
            names[str(identifier)] = title
    return names
