"""Transactional write primitives over the normalized project schema.

Every method commits (or rolls back) its own transaction. After a successful
commit the aggregate cache entries scoped to the touched project are
invalidated, so the next read recomputes from committed data.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from database import db
from models.cue import Cue
from models.estimate import Estimate
from models.invoice import Invoice, InvoiceStatus
from models.payment import Payment
from models.project import Project, ProjectStatus
from models.project_scope import ProjectScope
from services.aggregate_cache import AggregateCache
from services.errors import IntegrityViolation, StoreError, TransactionFailure

logger = logging.getLogger(__name__)

SCOPE_FIELDS = (
    "contact_email",
    "music_minutes",
    "dialogue_hours",
    "sound_design_hours",
    "mix_hours",
    "revision_hours",
)


def _column_values(model, fields: Mapping[str, Any], *, exclude: tuple[str, ...] = ()) -> dict[str, Any]:
    """Keep only keys that are real columns of ``model`` (never the primary key)."""

    columns = model.__table__.columns
    return {
        name: value
        for name, value in fields.items()
        if name in columns and name != "id" and name not in exclude
    }


class EntityStore:
    """Write path shared by the consolidation engine and live callers.

    ``session`` defaults to the Flask-SQLAlchemy session of whichever app
    context is active when a method runs, so one store can be shared by
    worker threads that each push their own context.
    """

    def __init__(self, session=None, cache: Optional[AggregateCache] = None):
        self._session = session
        self.cache = cache

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    @contextmanager
    def transaction(
        self,
        operation: str,
        *,
        integrity_error: type[StoreError] = IntegrityViolation,
    ) -> Iterator[Any]:
        """Commit on success; roll back and raise a ``StoreError`` otherwise."""

        session = self.session
        try:
            yield session
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise integrity_error(f"{operation} rejected: {exc.orig}", operation) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            raise TransactionFailure(f"{operation} could not commit: {exc}", operation) from exc
        except Exception:
            session.rollback()
            raise

    def _invalidate(self, project_id: Optional[int]) -> None:
        if self.cache is not None and project_id is not None:
            self.cache.invalidate_project(project_id)

    # Projects
    # ------------------------------

    def create_project(self, **fields) -> Project:
        project = Project(**_column_values(Project, fields))
        with self.transaction("create_project") as session:
            session.add(project)
        self._invalidate(project.id)
        logger.info("Created project %s (ID: %s)", project.name, project.id)
        return project

    def list_projects(self) -> list[Project]:
        return list(self.session.scalars(select(Project).order_by(Project.id)))

    def update_project_notes(self, project_id: int, notes: Optional[str]) -> None:
        with self.transaction("update_project_notes") as session:
            project = session.get(Project, project_id)
            if project is None:
                raise LookupError(f"Project {project_id} not found")
            project.notes = notes
        self._invalidate(project_id)

    def delete_project(self, project_id: int) -> None:
        """Delete a project and, through ON DELETE CASCADE, everything it owns.

        The delete and its cascade share one transaction; on failure nothing
        is removed and ``TransactionFailure`` is raised.
        """

        with self.transaction("delete_project", integrity_error=TransactionFailure) as session:
            project = session.get(Project, project_id)
            if project is None:
                raise LookupError(f"Project {project_id} not found")
            session.delete(project)
        self._invalidate(project_id)
        logger.info("Deleted project %s and its dependent records", project_id)

    # Scope
    # ------------------------------

    def upsert_scope(self, project_id: int, fields: Mapping[str, Any]) -> ProjectScope:
        """Insert the project's scope, or overwrite it if one already exists."""

        values = {name: fields[name] for name in SCOPE_FIELDS if name in fields}
        now = datetime.utcnow()
        with self.transaction("upsert_scope") as session:
            dialect = session.get_bind().dialect.name
            if dialect in ("sqlite", "postgresql"):
                insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
                statement = insert(ProjectScope).values(
                    project_id=project_id, created_at=now, updated_at=now, **values
                )
                updates = {name: statement.excluded[name] for name in values}
                updates["updated_at"] = statement.excluded.updated_at
                session.execute(
                    statement.on_conflict_do_update(index_elements=["project_id"], set_=updates)
                )
            else:
                scope = session.scalars(
                    select(ProjectScope).filter_by(project_id=project_id).with_for_update()
                ).one_or_none()
                if scope is None:
                    scope = ProjectScope(project_id=project_id)
                    session.add(scope)
                for name, value in values.items():
                    setattr(scope, name, value)
                scope.updated_at = now
        self._invalidate(project_id)
        return self.session.scalars(select(ProjectScope).filter_by(project_id=project_id)).one()

    # Dependent records
    # ------------------------------

    def _insert(self, model, fields: Mapping[str, Any], operation: str):
        row = model(**_column_values(model, fields))
        with self.transaction(operation) as session:
            session.add(row)
        self._invalidate(row.project_id)
        return row

    def insert_estimate(self, fields: Mapping[str, Any]) -> Estimate:
        return self._insert(Estimate, fields, "insert_estimate")

    def insert_cue(self, fields: Mapping[str, Any]) -> Cue:
        return self._insert(Cue, fields, "insert_cue")

    def insert_invoice(self, fields: Mapping[str, Any]) -> Invoice:
        return self._insert(Invoice, fields, "insert_invoice")

    def insert_payment(self, fields: Mapping[str, Any]) -> Payment:
        """Insert a payment whose project is taken from its invoice.

        A ``project_id`` supplied in ``fields`` is ignored.
        """

        values = _column_values(Payment, fields, exclude=("project_id",))
        invoice_id = values.get("invoice_id")
        with self.transaction("insert_payment") as session:
            invoice = session.get(Invoice, invoice_id) if invoice_id is not None else None
            if invoice is None:
                raise IntegrityViolation(
                    f"insert_payment rejected: invoice {invoice_id} does not exist",
                    "insert_payment",
                )
            payment = Payment(project_id=invoice.project_id, **values)
            session.add(payment)
        self._invalidate(payment.project_id)
        return payment

    def mark_invoice_paid(self, invoice_id: int, payment_fields: Mapping[str, Any]) -> Payment:
        """Record a payment and settle its invoice in a single transaction.

        The project moves to completed when the invoice was for the full
        amount (deposit percentage of 100), otherwise to active.
        """

        values = _column_values(Payment, payment_fields, exclude=("project_id", "invoice_id"))
        values.setdefault("payment_type", values.get("payment_method"))
        with self.transaction("mark_invoice_paid") as session:
            invoice = session.get(Invoice, invoice_id)
            if invoice is None:
                raise LookupError(f"Invoice {invoice_id} not found")
            invoice.status_enum = InvoiceStatus.PAID
            payment = Payment(invoice_id=invoice.id, project_id=invoice.project_id, **values)
            session.add(payment)
            project = invoice.project
            if invoice.deposit_percentage == 100:
                project.status_enum = ProjectStatus.COMPLETED
            else:
                project.status_enum = ProjectStatus.ACTIVE
        self._invalidate(payment.project_id)
        return payment

    # Lookups
    # ------------------------------

    def find_invoice(
        self, invoice_id: Optional[int] = None, invoice_number: Optional[str] = None
    ) -> Optional[Invoice]:
        if invoice_number:
            invoice = self.session.scalars(
                select(Invoice).filter_by(invoice_number=invoice_number)
            ).first()
            if invoice is not None:
                return invoice
        if invoice_id is not None:
            return self.session.get(Invoice, invoice_id)
        return None

    def has_equivalent(self, model, criteria: Mapping[str, Any]) -> bool:
        """True when a ``model`` row already matches every column in ``criteria``."""

        statement = select(model.id).filter_by(**_column_values(model, criteria)).limit(1)
        return self.session.scalar(statement) is not None


def get_entity_store() -> EntityStore:
    """Return a store bound to the current app's session and aggregate cache."""

    from services.aggregate_service import get_aggregate_cache

    return EntityStore(cache=get_aggregate_cache())
