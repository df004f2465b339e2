"""One-shot consolidation of legacy browser-store records into the entity store.

Kinds run in dependency order: projects, then scope, then estimates, cues
and invoices, then payments (which need the invoices). Each record is
resolved against a single snapshot of known projects and written on its own,
so one bad record is reported and never stops the rest of the batch.

Scope is written with an upsert and can safely be consolidated again. The
other kinds are plain inserts: running the same batch twice duplicates them
unless the caller opts into ``dedup_keys`` for that kind.
"""
from __future__ import annotations

import logging
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Iterable, Mapping, Optional, Sequence

from flask import Flask, current_app

from models.cue import Cue
from models.estimate import Estimate
from models.invoice import Invoice
from models.payment import Payment
from models.project_scope import ProjectScope
from services.entity_store import EntityStore
from services.errors import ResolutionFailure, StoreError
from services.legacy_mapping import (
    LegacyBatch,
    MappedRecord,
    RecordKind,
    map_cue,
    map_estimate,
    map_invoice,
    map_payment,
    map_project,
    map_scope,
    scope_from_notes,
)
from services.resolver import ProjectResolver, ProjectSnapshot, coerce_project_id

logger = logging.getLogger(__name__)

KIND_MODELS = {
    RecordKind.SCOPE: ProjectScope,
    RecordKind.ESTIMATES: Estimate,
    RecordKind.CUES: Cue,
    RecordKind.INVOICES: Invoice,
    RecordKind.PAYMENTS: Payment,
}

KIND_LABELS = {
    RecordKind.PROJECTS: "Projects",
    RecordKind.SCOPE: "Scope Data",
    RecordKind.ESTIMATES: "Estimates",
    RecordKind.CUES: "Cues",
    RecordKind.INVOICES: "Invoices",
    RecordKind.PAYMENTS: "Payments",
}


class Outcome(StrEnum):
    """What happened to a single legacy record."""

    MIGRATED = "migrated"
    SKIPPED_UNRESOLVED = "skipped_unresolved"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    FAILED_WRITE = "failed_write"


@dataclass(frozen=True)
class RecordFailure:
    record_ref: str
    outcome: Outcome
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {"record_ref": self.record_ref, "outcome": self.outcome.value, "reason": self.reason}


@dataclass
class KindReport:
    migrated: int = 0
    errors: int = 0
    skipped: int = 0
    cancelled: int = 0
    failures: list[RecordFailure] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "migrated": self.migrated,
            "errors": self.errors,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "failures": [failure.to_dict() for failure in self.failures],
        }


@dataclass
class ConsolidationReport:
    """Per-kind tally of outcomes; ``errors`` counts unresolved plus failed writes."""

    kinds: dict[RecordKind, KindReport] = field(
        default_factory=lambda: {kind: KindReport() for kind in RecordKind}
    )
    cancelled: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def __getitem__(self, kind) -> KindReport:
        return self.kinds[RecordKind(kind)]

    def record(
        self,
        kind: RecordKind,
        outcome: Outcome,
        record_ref: str,
        reason: Optional[str] = None,
    ) -> None:
        with self._lock:
            tally = self.kinds[kind]
            if outcome == Outcome.MIGRATED:
                tally.migrated += 1
                return
            if outcome == Outcome.SKIPPED_DUPLICATE:
                tally.skipped += 1
            else:
                tally.errors += 1
            tally.failures.append(RecordFailure(record_ref, outcome, reason or outcome.value))

    def record_cancelled(self, kind: RecordKind, count: int = 1) -> None:
        with self._lock:
            self.cancelled = True
            self.kinds[kind].cancelled += count

    @property
    def total_migrated(self) -> int:
        return sum(tally.migrated for tally in self.kinds.values())

    @property
    def total_errors(self) -> int:
        return sum(tally.errors for tally in self.kinds.values())

    def as_dict(self) -> dict[str, Any]:
        return {kind.value: tally.to_dict() for kind, tally in self.kinds.items()}

    def summary_lines(self) -> list[str]:
        lines = ["=" * 50, "CONSOLIDATION SUMMARY", "=" * 50]
        for kind, tally in self.kinds.items():
            label = f"{KIND_LABELS[kind]}:".ljust(12)
            line = f"{label}{tally.migrated} migrated, {tally.errors} errors"
            if tally.skipped:
                line += f", {tally.skipped} skipped"
            if tally.cancelled:
                line += f", {tally.cancelled} not attempted"
            lines.append(line)
        lines.append("=" * 50)
        if self.cancelled:
            lines.append("Consolidation was cancelled before every record was attempted.")
        return lines


@dataclass
class _Job:
    record: MappedRecord
    project_id: int
    invoice_id: Optional[int] = None


class ConsolidationEngine:
    """Drives resolution, defaulting and writes for one legacy source.

    ``workers`` > 1 spreads a phase over a bounded thread pool. Records are
    grouped by project and each group runs on a single worker, so writes for
    one project never interleave. ``cancel_event`` may be set from any thread;
    records not yet started are then skipped and counted as not attempted.
    """

    def __init__(
        self,
        store: EntityStore,
        *,
        workers: int = 1,
        dedup_keys: Optional[Mapping[Any, Sequence[str]]] = None,
        harvest_notes: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.store = store
        self.workers = max(1, int(workers))
        self.dedup_keys = self._validate_dedup_keys(dedup_keys or {})
        self.harvest_notes = harvest_notes
        self.cancel_event = cancel_event or threading.Event()
        self._running = threading.Lock()
        self._invoice_lock = threading.Lock()
        self._invoices_by_legacy_id: dict[str, tuple[int, int]] = {}
        self._invoices_by_number: dict[str, tuple[int, int]] = {}

    @staticmethod
    def _validate_dedup_keys(dedup_keys: Mapping[Any, Sequence[str]]) -> dict[RecordKind, tuple[str, ...]]:
        validated: dict[RecordKind, tuple[str, ...]] = {}
        for kind, columns in dedup_keys.items():
            kind = RecordKind(kind)
            if kind not in KIND_MODELS or kind == RecordKind.SCOPE:
                raise ValueError(f"Dedup keys are not supported for {kind.value}")
            table_columns = KIND_MODELS[kind].__table__.columns
            unknown = [column for column in columns if column not in table_columns]
            if unknown:
                raise ValueError(f"Unknown {kind.value} column(s) for dedup: {', '.join(unknown)}")
            validated[kind] = tuple(columns)
        return validated

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def run(self, batch: LegacyBatch) -> ConsolidationReport:
        """Consolidate ``batch`` and return the report. Must run in an app context."""

        if not self._running.acquire(blocking=False):
            raise RuntimeError("A consolidation run is already in progress on this engine")
        try:
            self._invoices_by_legacy_id.clear()
            self._invoices_by_number.clear()
            return self._run(batch)
        finally:
            self._running.release()

    def _run(self, batch: LegacyBatch) -> ConsolidationReport:
        app = current_app._get_current_object()
        report = ConsolidationReport()
        logger.info("Starting consolidation of %s legacy record(s)", len(batch))

        self._consolidate_projects(batch.projects, report)

        # One snapshot for the whole run keeps resolution deterministic.
        snapshot = ProjectSnapshot.load(self.store.session)
        resolver = ProjectResolver(snapshot)
        logger.info("Resolving against %s known project(s)", len(snapshot))

        scope_records = [map_scope(record, index) for index, record in enumerate(batch.scope)]
        if self.harvest_notes:
            scope_records.extend(self._harvest_scope_from_notes())
        self._run_phase(app, report, self._resolve_all(scope_records, resolver, report))

        dependents = [map_estimate(record, index) for index, record in enumerate(batch.estimates)]
        for project_key, cues in batch.cues.items():
            project_name = batch.cue_project_names.get(str(project_key))
            dependents.extend(
                map_cue(cue, project_key, index, project_name) for index, cue in enumerate(cues)
            )
        dependents.extend(map_invoice(record, index) for index, record in enumerate(batch.invoices))
        self._run_phase(app, report, self._resolve_all(dependents, resolver, report))

        payments = [map_payment(record, index) for index, record in enumerate(batch.payments)]
        self._run_phase(app, report, self._resolve_payments(payments, report))

        if report.total_errors:
            logger.warning(
                "Consolidation finished: %s migrated, %s errors",
                report.total_migrated,
                report.total_errors,
            )
        else:
            logger.info("Consolidation finished: %s migrated, no errors", report.total_migrated)
        return report

    # Projects
    # ------------------------------

    def _consolidate_projects(self, records: Iterable[Any], report: ConsolidationReport) -> None:
        records = list(records)
        if not records:
            return
        existing = {project.name: project.id for project in self.store.list_projects()}
        for index, raw in enumerate(records):
            if self.cancelled:
                report.record_cancelled(RecordKind.PROJECTS, len(records) - index)
                return
            mapped = map_project(raw, index)
            name = mapped.fields["name"]
            if name is not None and name in existing:
                report.record(
                    RecordKind.PROJECTS,
                    Outcome.SKIPPED_DUPLICATE,
                    mapped.record_ref,
                    f"already exists (ID: {existing[name]})",
                )
                continue
            try:
                project = self.store.create_project(**mapped.fields)
            except StoreError as exc:
                logger.warning("Failed to create %s: %s", mapped.record_ref, exc)
                report.record(RecordKind.PROJECTS, Outcome.FAILED_WRITE, mapped.record_ref, str(exc))
                continue
            existing[project.name] = project.id
            report.record(RecordKind.PROJECTS, Outcome.MIGRATED, mapped.record_ref)

    def _harvest_scope_from_notes(self) -> list[MappedRecord]:
        harvested = []
        for project in self.store.list_projects():
            mapped = scope_from_notes(project.id, project.name, project.notes)
            if mapped is not None:
                harvested.append(mapped)
        if harvested:
            logger.info("Found scope data in the notes of %s project(s)", len(harvested))
        return harvested

    # Resolution
    # ------------------------------

    def _resolve_all(
        self,
        records: Iterable[MappedRecord],
        resolver: ProjectResolver,
        report: ConsolidationReport,
    ) -> list[_Job]:
        jobs = []
        for record in records:
            try:
                project_id = resolver.resolve(record.project_ref.identifier, record.project_ref.name)
            except ResolutionFailure as exc:
                logger.warning("Skipping %s - %s", record.record_ref, exc)
                report.record(record.kind, Outcome.SKIPPED_UNRESOLVED, record.record_ref, str(exc))
                continue
            jobs.append(_Job(record, project_id))
        return jobs

    def _resolve_payments(
        self, records: Iterable[MappedRecord], report: ConsolidationReport
    ) -> list[_Job]:
        jobs = []
        for record in records:
            target = self._find_invoice(record)
            if target is None:
                reason = f"Invoice {record.invoice_ref} not found"
                logger.warning("Skipping %s - %s", record.record_ref, reason)
                report.record(record.kind, Outcome.SKIPPED_UNRESOLVED, record.record_ref, reason)
                continue
            invoice_id, project_id = target
            jobs.append(_Job(record, project_id, invoice_id=invoice_id))
        return jobs

    def _find_invoice(self, record: MappedRecord) -> Optional[tuple[int, int]]:
        """Legacy invoice id from this run, then invoice number, then stored id."""

        ref = record.invoice_ref
        if ref is None:
            return None
        if ref.identifier is not None and str(ref.identifier) in self._invoices_by_legacy_id:
            return self._invoices_by_legacy_id[str(ref.identifier)]
        if ref.number and ref.number in self._invoices_by_number:
            return self._invoices_by_number[ref.number]
        invoice = self.store.find_invoice(
            invoice_id=coerce_project_id(ref.identifier), invoice_number=ref.number
        )
        if invoice is None:
            return None
        return invoice.id, invoice.project_id

    # Writes
    # ------------------------------

    def _run_phase(self, app: Flask, report: ConsolidationReport, jobs: list[_Job]) -> None:
        if not jobs:
            return
        if self.cancelled:
            for job in jobs:
                report.record_cancelled(job.record.kind)
            return

        if self.workers == 1:
            self._apply_group(jobs, report)
            return

        groups: dict[int, list[_Job]] = defaultdict(list)
        for job in jobs:
            groups[job.project_id].append(job)
        with ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="consolidate"
        ) as pool:
            futures = [
                pool.submit(self._apply_group_in_context, app, group, report)
                for group in groups.values()
            ]
            for future in futures:
                future.result()

    def _apply_group_in_context(self, app: Flask, jobs: list[_Job], report: ConsolidationReport) -> None:
        with app.app_context():
            self._apply_group(jobs, report)

    def _apply_group(self, jobs: list[_Job], report: ConsolidationReport) -> None:
        for job in jobs:
            if self.cancelled:
                report.record_cancelled(job.record.kind)
                continue
            self._apply(job, report)

    def _apply(self, job: _Job, report: ConsolidationReport) -> None:
        record = job.record
        try:
            if self._is_duplicate(job):
                report.record(
                    record.kind,
                    Outcome.SKIPPED_DUPLICATE,
                    record.record_ref,
                    "an equivalent row already exists",
                )
                return
            self._write(job)
        except StoreError as exc:
            logger.warning("Failed to write %s: %s", record.record_ref, exc)
            report.record(record.kind, Outcome.FAILED_WRITE, record.record_ref, str(exc))
            return
        except Exception as exc:
            logger.exception("Unexpected error while consolidating %s", record.record_ref)
            report.record(record.kind, Outcome.FAILED_WRITE, record.record_ref, str(exc))
            return
        logger.info("Migrated %s -> project %s", record.record_ref, job.project_id)
        report.record(record.kind, Outcome.MIGRATED, record.record_ref)

    def _is_duplicate(self, job: _Job) -> bool:
        columns = self.dedup_keys.get(job.record.kind)
        if not columns:
            return False
        criteria = {"project_id": job.project_id}
        if job.invoice_id is not None:
            criteria["invoice_id"] = job.invoice_id
        criteria.update({column: job.record.fields.get(column) for column in columns})
        return self.store.has_equivalent(KIND_MODELS[job.record.kind], criteria)

    def _write(self, job: _Job) -> None:
        record = job.record
        fields = dict(record.fields)
        if record.kind == RecordKind.SCOPE:
            self.store.upsert_scope(job.project_id, fields)
            if record.from_notes:
                self.store.update_project_notes(job.project_id, "")
        elif record.kind == RecordKind.ESTIMATES:
            self.store.insert_estimate({**fields, "project_id": job.project_id})
        elif record.kind == RecordKind.CUES:
            self.store.insert_cue({**fields, "project_id": job.project_id})
        elif record.kind == RecordKind.INVOICES:
            invoice = self.store.insert_invoice({**fields, "project_id": job.project_id})
            target = (invoice.id, job.project_id)
            with self._invoice_lock:
                if record.legacy_id is not None:
                    self._invoices_by_legacy_id[str(record.legacy_id)] = target
                if invoice.invoice_number:
                    self._invoices_by_number[invoice.invoice_number] = target
        elif record.kind == RecordKind.PAYMENTS:
            self.store.insert_payment({**fields, "invoice_id": job.invoice_id})
        else:
            raise ValueError(f"Unsupported record kind {record.kind}")
