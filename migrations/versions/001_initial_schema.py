"""Initial ledger schema (SQL file).

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

SQL_FILE = Path(__file__).resolve().parents[1] / "sql" / "001_initial.sql"


def upgrade() -> None:
    # exec_driver_sql sends the file as one multi-statement batch.
    op.get_bind().exec_driver_sql(SQL_FILE.read_text(encoding="utf-8"))


def downgrade() -> None:
    raise NotImplementedError("Downgrade not supported")
