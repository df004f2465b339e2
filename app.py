import json
import os
import logging
import threading
from collections import defaultdict

import click
from dotenv import load_dotenv
from flask import Flask
from flask_migrate import Migrate

from database import db

load_dotenv()

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)


def _int_setting(name, default):
    value = os.environ.get(name)
    return int(value) if value not in (None, "") else default


# Initialize Flask app
app = Flask(__name__)
app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get(
    "DATABASE_URL", "sqlite:///studioledger.db"
)
app.config["AGGREGATE_CACHE_MAX_ENTRIES"] = _int_setting("AGGREGATE_CACHE_MAX_ENTRIES", 100)
app.config["AGGREGATE_CACHE_MAX_MEMORY_BYTES"] = _int_setting(
    "AGGREGATE_CACHE_MAX_MEMORY_BYTES", 50 * 1024 * 1024
)
app.config["AGGREGATE_CACHE_DEFAULT_TTL_MS"] = _int_setting("AGGREGATE_CACHE_DEFAULT_TTL_MS", 60000)
app.config["CONSOLIDATION_WORKERS"] = _int_setting("CONSOLIDATION_WORKERS", 1)

db.init_app(app)

# Models import should be after initializing db
from models.project import Project
from models.project_scope import ProjectScope
from models.estimate import Estimate
from models.cue import Cue
from models.invoice import Invoice
from models.payment import Payment

from services.aggregate_service import init_aggregate_cache
from services.consolidation_service import ConsolidationEngine
from services.entity_store import get_entity_store
from services.errors import TransactionFailure
from services.legacy_mapping import CLEARABLE_STORAGE_KEYS, LegacyBatch, RecordKind

# Create flask command lines to update the db based on the model
# Useage:
# Create a migration script in ./migrations/versions
# > flask db migrate -m "Update comments"
# Run the update
# > flask db upgrade
migrate = Migrate(app, db, render_as_batch=True)
init_aggregate_cache(app)


# Command line
# ------------------------------


def _parse_dedup(values):
    """Turn ``("cues=cue_number,title", ...)`` into ``{RecordKind.CUES: ("cue_number", "title")}``."""

    dedup = defaultdict(list)
    for value in values:
        kind, sep, columns = value.partition("=")
        if not sep or not columns.strip():
            raise click.BadParameter(f"expected KIND=column[,column...], got {value!r}")
        try:
            kind = RecordKind(kind.strip())
        except ValueError:
            raise click.BadParameter(f"unknown record kind {kind.strip()!r}") from None
        dedup[kind].extend(column.strip() for column in columns.split(",") if column.strip())
    return {kind: tuple(columns) for kind, columns in dedup.items()}


@app.cli.command("consolidate")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--workers", type=click.IntRange(min=1), default=None, help="Parallel writers.")
@click.option(
    "--dedup",
    "dedup",
    multiple=True,
    metavar="KIND=COLUMNS",
    help="Skip records already stored with the same values, e.g. cues=cue_number.",
)
@click.option(
    "--harvest-notes/--no-harvest-notes",
    default=False,
    help="Recover scope data serialised into project notes.",
)
def consolidate_command(path, workers, dedup, harvest_notes):
    """Consolidate a browser localStorage export (JSON) into the database."""

    with open(path, encoding="utf-8") as handle:
        try:
            dump = json.load(handle)
        except ValueError as exc:
            raise click.ClickException(f"{path} is not valid JSON: {exc}")
    if not isinstance(dump, dict):
        raise click.ClickException(f"{path} must contain a JSON object of localStorage keys")

    try:
        engine = ConsolidationEngine(
            get_entity_store(),
            workers=workers or app.config["CONSOLIDATION_WORKERS"],
            dedup_keys=_parse_dedup(dedup),
            harvest_notes=harvest_notes,
            cancel_event=threading.Event(),
        )
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--dedup")

    batch = LegacyBatch.from_local_storage(dump)
    try:
        report = engine.run(batch)
    except KeyboardInterrupt:
        engine.cancel()
        raise click.Abort()

    for line in report.summary_lines():
        click.echo(line)
    if report.total_errors:
        click.echo(f"{report.total_errors} record(s) were not consolidated; keep the export.", err=True)
        raise SystemExit(1)
    click.echo("All records consolidated. The following legacy keys can be cleared:")
    for key in CLEARABLE_STORAGE_KEYS:
        click.echo(f"  {key}")


@app.cli.command("delete-project")
@click.argument("project_id", type=int)
def delete_project_command(project_id):
    """Delete a project together with its scope, estimates, cues, invoices and payments."""

    store = get_entity_store()
    try:
        store.delete_project(project_id)
    except LookupError as exc:
        raise click.ClickException(str(exc))
    except TransactionFailure as exc:
        logging.error("Unable to delete project %s: %s", project_id, exc, exc_info=True)
        raise click.ClickException(f"Delete rolled back: {exc}")
    click.echo(f"Deleted project {project_id}.")
