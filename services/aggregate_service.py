"""Derived per-project and global aggregates, served through the aggregate cache."""
from __future__ import annotations

from typing import Any, Callable, Optional

from flask import Flask, current_app
from sqlalchemy import exists, func, select

from database import db
from models.cue import Cue, CueStatus
from models.estimate import Estimate
from models.invoice import Invoice
from models.payment import Payment
from models.project import Project
from models.project_scope import ProjectScope
from services.aggregate_cache import AggregateCache, CacheConfig, global_key, project_key

CACHE_EXTENSION_KEY = "aggregate_cache"


def init_aggregate_cache(app: Flask) -> AggregateCache:
    """Construct the process-wide cache for ``app`` from its configuration."""

    config = CacheConfig(
        max_entries=app.config["AGGREGATE_CACHE_MAX_ENTRIES"],
        max_memory_bytes=app.config["AGGREGATE_CACHE_MAX_MEMORY_BYTES"],
        default_ttl_ms=app.config["AGGREGATE_CACHE_DEFAULT_TTL_MS"],
    )
    cache = AggregateCache(config)
    app.extensions[CACHE_EXTENSION_KEY] = cache
    return cache


def get_aggregate_cache(app: Optional[Flask] = None) -> AggregateCache:
    app = app or current_app
    return app.extensions[CACHE_EXTENSION_KEY]


def _with_app_context(fn: Callable[..., Any], *args) -> Callable[[], Any]:
    # The cache may run the computation on a helper thread; give it its own
    # app context (and therefore its own session over committed data).
    app = current_app._get_current_object()

    def compute():
        with app.app_context():
            return fn(*args)

    return compute


def _require_project(project_id: int) -> None:
    if db.session.get(Project, project_id) is None:
        raise LookupError(f"Project {project_id} not found")


def _compute_project_totals(project_id: int) -> dict[str, Any]:
    _require_project(project_id)
    session = db.session
    estimate_count = session.scalar(
        select(func.count(Estimate.id)).where(Estimate.project_id == project_id)
    )
    latest_total = session.scalar(
        select(Estimate.total_cost)
        .where(Estimate.project_id == project_id)
        .order_by(Estimate.created_at.desc(), Estimate.id.desc())
        .limit(1)
    )
    cue_count = session.scalar(select(func.count(Cue.id)).where(Cue.project_id == project_id))
    invoice_count, invoiced_total = session.execute(
        select(func.count(Invoice.id), func.coalesce(func.sum(Invoice.amount), 0)).where(
            Invoice.project_id == project_id
        )
    ).one()
    paid_total = session.scalar(
        select(func.coalesce(func.sum(Payment.amount), 0)).where(Payment.project_id == project_id)
    )
    return {
        "project_id": project_id,
        "estimate_count": estimate_count,
        "latest_estimate_total": float(latest_total or 0),
        "cue_count": cue_count,
        "invoice_count": invoice_count,
        "invoiced_total": float(invoiced_total),
        "paid_total": float(paid_total),
        "outstanding": float(invoiced_total) - float(paid_total),
    }


def _compute_cue_status_counts(project_id: int) -> dict[str, int]:
    _require_project(project_id)
    counts = {status.value: 0 for status in CueStatus}
    rows = db.session.execute(
        select(Cue.status, func.count(Cue.id)).where(Cue.project_id == project_id).group_by(Cue.status)
    )
    for status, count in rows:
        counts[status] = count
    counts["total"] = sum(counts.values())
    return counts


def _compute_projects_overview() -> list[dict[str, Any]]:
    def count_of(model):
        return (
            select(func.count(model.id))
            .where(model.project_id == Project.id)
            .correlate(Project)
            .scalar_subquery()
        )

    statement = select(
        Project.id,
        Project.name,
        Project.status,
        Project.pinned,
        count_of(Estimate).label("estimate_count"),
        count_of(Cue).label("cue_count"),
        count_of(Invoice).label("invoice_count"),
        count_of(Payment).label("payment_count"),
        exists().where(ProjectScope.project_id == Project.id).label("has_scope"),
    ).order_by(Project.pinned.desc(), Project.name)
    return [
        {
            "id": row.id,
            "name": row.name,
            "status": row.status,
            "pinned": bool(row.pinned),
            "estimate_count": row.estimate_count,
            "cue_count": row.cue_count,
            "invoice_count": row.invoice_count,
            "payment_count": row.payment_count,
            "has_scope": bool(row.has_scope),
        }
        for row in db.session.execute(statement)
    ]


def project_totals(
    project_id: int,
    *,
    ttl_seconds: Optional[float] = None,
    timeout: Optional[float] = None,
    cache: Optional[AggregateCache] = None,
) -> dict[str, Any]:
    """Counts and money totals for one project."""

    cache = cache or get_aggregate_cache()
    return cache.get_or_compute(
        project_key(project_id, "totals"),
        _with_app_context(_compute_project_totals, project_id),
        ttl_seconds=ttl_seconds,
        timeout=timeout,
    )


def cue_status_counts(
    project_id: int,
    *,
    ttl_seconds: Optional[float] = None,
    timeout: Optional[float] = None,
    cache: Optional[AggregateCache] = None,
) -> dict[str, int]:
    """Number of cues per status for one project, plus a ``total``."""

    cache = cache or get_aggregate_cache()
    return cache.get_or_compute(
        project_key(project_id, "cue-status"),
        _with_app_context(_compute_cue_status_counts, project_id),
        ttl_seconds=ttl_seconds,
        timeout=timeout,
    )


def projects_overview(
    *,
    ttl_seconds: Optional[float] = None,
    timeout: Optional[float] = None,
    cache: Optional[AggregateCache] = None,
) -> list[dict[str, Any]]:
    """One summary row per project (pinned first, then by name)."""

    cache = cache or get_aggregate_cache()
    return cache.get_or_compute(
        global_key("projects:overview"),
        _with_app_context(_compute_projects_overview),
        ttl_seconds=ttl_seconds,
        timeout=timeout,
    )
