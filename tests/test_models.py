"""Tests for ORM model imports, table names, constraints, and the SQL schema."""

import pytest

from photostudio.models import (
    AuditLog,
    Base,
    CreditTransaction,
    Folder,
    Image,
    Payment,
    PaymentStatus,
    TxnType,
    User,
)

MODEL_TABLE_PAIRS = [
    (User, "users"),
    (CreditTransaction, "credit_transactions"),
    (Payment, "payments"),
    (AuditLog, "audit_logs"),
    (Folder, "folders"),
    (Image, "images"),
]


class TestModelImports:
    @pytest.mark.parametrize(
        "model_cls,expected_table",
        MODEL_TABLE_PAIRS,
        ids=[pair[1] for pair in MODEL_TABLE_PAIRS],
    )
    def test_model_importable_and_table_name(self, model_cls, expected_table):
        assert model_cls.__tablename__ == expected_table


class TestBaseMetadata:
    def test_all_tables_registered(self):
        assert set(Base.metadata.tables.keys()) == {pair[1] for pair in MODEL_TABLE_PAIRS}

    def test_metadata_column_names(self):
        # ``meta`` attributes map onto the ``metadata`` column.
        for table in ("payments", "audit_logs", "images"):
            assert "metadata" in Base.metadata.tables[table].columns

    def test_check_constraints(self):
        def constraint_names(table):
            return {c.name for c in Base.metadata.tables[table].constraints}

        assert "ck_users_credits_nonneg" in constraint_names("users")
        assert "ck_payment_status" in constraint_names("payments")
        assert "ck_credit_txn_type" in constraint_names("credit_transactions")
        assert "uq_folder_user_name" in constraint_names("folders")

    def test_enumerations(self):
        assert PaymentStatus.ALL == ("created", "completed", "failed", "refunded")
        assert TxnType.ALL == ("bonus", "purchase", "usage", "refund")


class TestUserRelationships:
    @pytest.mark.parametrize("attr", ["credit_transactions", "payments", "folders", "images"])
    def test_user_has_relationship(self, attr):
        assert attr in User.__mapper__.relationships


class TestMigrationSyntax:
    def test_migration_compiles(self):
        import py_compile

        py_compile.compile("src/alembic/versions/001_initial_schema.py", doraise=True)

    def test_sql_modules_cover_every_table(self):
        from photostudio.schema_sql import indexes, tables_core, tables_ledger, tables_library, triggers

        ddl = "\n".join(tables_core.ALL + tables_library.ALL + tables_ledger.ALL)
        for _, table in MODEL_TABLE_PAIRS:
            assert f"CREATE TABLE {table} (" in ddl
        assert len(indexes.ALL) > 0
        assert any("credit_transactions" in t for t in triggers.TRIGGERS_ALL)
        assert any("audit_logs" in t for t in triggers.TRIGGERS_ALL)

    def test_ledger_trigger_allows_image_detach_only(self):
        from photostudio.schema_sql import triggers

        assert "NEW.image_id IS NULL" in triggers.FN_CHECK_IMMUTABLE_LEDGER
        assert "TG_OP = 'DELETE'" in triggers.FN_CHECK_IMMUTABLE_LEDGER
