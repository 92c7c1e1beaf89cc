"""Initial schema -- users, payments, ledger, audit log, library, triggers.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-09-28
"""

from alembic import op

from photostudio.schema_sql import (
    indexes,
    tables_core,
    tables_ledger,
    tables_library,
    triggers,
)

revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _execute_all(statements: list[str]) -> None:
    """Execute a list of SQL statements sequentially."""
    for stmt in statements:
        op.execute(stmt)


def upgrade() -> None:
    # credit_transactions references both payments and images.
    _execute_all(tables_core.ALL)
    _execute_all(tables_library.ALL)
    _execute_all(tables_ledger.ALL)
    _execute_all(indexes.ALL)
    _execute_all(triggers.FUNCTIONS_ALL)
    _execute_all(triggers.TRIGGERS_ALL)


def downgrade() -> None:
    _drop_triggers()
    _drop_functions()
    _drop_tables()


def _drop_triggers() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_folders_touch ON folders;")
    op.execute("DROP TRIGGER IF EXISTS trg_payments_touch ON payments;")
    op.execute("DROP TRIGGER IF EXISTS trg_users_touch ON users;")
    op.execute("DROP TRIGGER IF EXISTS trg_audit_logs_immutable ON audit_logs;")
    op.execute(
        "DROP TRIGGER IF EXISTS trg_credit_transactions_immutable "
        "ON credit_transactions;"
    )


def _drop_functions() -> None:
    op.execute("DROP FUNCTION IF EXISTS touch_updated_at();")
    op.execute("DROP FUNCTION IF EXISTS check_immutable_ledger();")
    op.execute("DROP FUNCTION IF EXISTS raise_immutable_error();")


def _drop_tables() -> None:
    tables = [
        "credit_transactions",
        "images",
        "folders",
        "audit_logs",
        "payments",
        "users",
    ]
    for table in tables:
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE;")
