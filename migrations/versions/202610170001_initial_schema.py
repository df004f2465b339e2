"""Create the consolidated project schema (SQLite-safe, idempotent)."""
from __future__ import annotations
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "202610170001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


STATUS_LENGTH = 20


def _timestamps(updated=True):
    columns = [
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    ]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now())
        )
    return columns


def _money(name):
    return sa.Column(name, sa.Float(), nullable=False, server_default="0")


def _project_fk(table):
    return sa.ForeignKeyConstraint(
        ["project_id"],
        ["projects.id"],
        name=f"fk_{table}_project_id",
        ondelete="CASCADE",
    )


def upgrade():
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing = set(inspector.get_table_names())

    # --- projects ---
    if "projects" not in existing:
        op.create_table(
            "projects",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("client_name", sa.String(length=255), nullable=True),
            sa.Column(
                "status",
                sa.String(length=STATUS_LENGTH),
                nullable=False,
                server_default="prospects",
            ),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("pinned", sa.Boolean(), nullable=False, server_default=sa.false()),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("name", name="uq_projects_name"),
        )
        print("[INFO] Created projects table.")
    else:
        print("[INFO] Skipping projects table creation (already exists).")

    # --- project_scope ---
    if "project_scope" not in existing:
        op.create_table(
            "project_scope",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("contact_email", sa.String(length=255), nullable=True),
            sa.Column("music_minutes", sa.Integer(), nullable=False, server_default="0"),
            _money("dialogue_hours"),
            _money("sound_design_hours"),
            _money("mix_hours"),
            _money("revision_hours"),
            *_timestamps(),
            _project_fk("project_scope"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", name="uq_project_scope_project_id"),
        )
        print("[INFO] Created project_scope table.")
    else:
        print("[INFO] Skipping project_scope table creation (already exists).")

    # --- estimates ---
    if "estimates" not in existing:
        op.create_table(
            "estimates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("runtime", sa.String(length=64), nullable=True),
            sa.Column("music_minutes", sa.Integer(), nullable=False, server_default="0"),
            _money("dialogue_hours"),
            _money("sound_design_hours"),
            _money("mix_hours"),
            _money("revision_hours"),
            _money("post_days"),
            sa.Column("bundle_discount", sa.Boolean(), nullable=False, server_default=sa.false()),
            _money("music_cost"),
            _money("post_cost"),
            _money("discount_amount"),
            _money("total_cost"),
            *_timestamps(updated=False),
            _project_fk("estimates"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_estimates_project_id", "estimates", ["project_id"])
        print("[INFO] Created estimates table.")
    else:
        print("[INFO] Skipping estimates table creation (already exists).")

    # --- cues ---
    if "cues" not in existing:
        op.create_table(
            "cues",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("cue_number", sa.String(length=64), nullable=True),
            sa.Column("title", sa.String(length=255), nullable=True),
            sa.Column(
                "status",
                sa.String(length=STATUS_LENGTH),
                nullable=False,
                server_default="to-write",
            ),
            sa.Column("duration", sa.String(length=32), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            *_timestamps(),
            _project_fk("cues"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "cue_number", name="uq_cue_project_number"),
        )
        op.create_index("ix_cues_project_id", "cues", ["project_id"])
        print("[INFO] Created cues table.")
    else:
        print("[INFO] Skipping cues table creation (already exists).")

    # --- invoices ---
    if "invoices" not in existing:
        op.create_table(
            "invoices",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("invoice_number", sa.String(length=64), nullable=True),
            _money("amount"),
            _money("deposit_amount"),
            _money("deposit_percentage"),
            _money("final_amount"),
            sa.Column(
                "status",
                sa.String(length=STATUS_LENGTH),
                nullable=False,
                server_default="draft",
            ),
            sa.Column("due_date", sa.String(length=32), nullable=True),
            sa.Column("issue_date", sa.String(length=32), nullable=True),
            sa.Column("line_items", sa.Text(), nullable=False, server_default="[]"),
            *_timestamps(),
            _project_fk("invoices"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("invoice_number", name="uq_invoices_invoice_number"),
        )
        op.create_index("ix_invoices_project_id", "invoices", ["project_id"])
        print("[INFO] Created invoices table.")
    else:
        print("[INFO] Skipping invoices table creation (already exists).")

    # --- payments ---
    if "payments" not in existing:
        op.create_table(
            "payments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("invoice_id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            _money("amount"),
            sa.Column("payment_date", sa.String(length=32), nullable=True),
            sa.Column("payment_method", sa.String(length=64), nullable=True),
            sa.Column("payment_type", sa.String(length=64), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            *_timestamps(updated=False),
            sa.ForeignKeyConstraint(
                ["invoice_id"],
                ["invoices.id"],
                name="fk_payments_invoice_id",
                ondelete="CASCADE",
            ),
            _project_fk("payments"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_payments_invoice_id", "payments", ["invoice_id"])
        op.create_index("ix_payments_project_id", "payments", ["project_id"])
        print("[INFO] Created payments table.")
    else:
        print("[INFO] Skipping payments table creation (already exists).")


def downgrade():
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing = set(inspector.get_table_names())

    # Children first so foreign keys never dangle.
    for table, indexes in (
        ("payments", ["ix_payments_project_id", "ix_payments_invoice_id"]),
        ("invoices", ["ix_invoices_project_id"]),
        ("cues", ["ix_cues_project_id"]),
        ("estimates", ["ix_estimates_project_id"]),
        ("project_scope", []),
        ("projects", []),
    ):
        if table not in existing:
            print(f"[INFO] Skipping drop; {table} table not found.")
            continue
        for index_name in indexes:
            op.drop_index(index_name, table_name=table)
        op.drop_table(table)
        print(f"[INFO] Dropped {table} table.")
