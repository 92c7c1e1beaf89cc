"""Trigger functions and trigger DDL for the initial schema."""

# ---- Trigger functions ----

FN_RAISE_IMMUTABLE = """
CREATE OR REPLACE FUNCTION raise_immutable_error()
RETURNS TRIGGER AS $$
BEGIN
    RAISE EXCEPTION 'Rows in table % are immutable', TG_TABLE_NAME;
END;
$$ LANGUAGE plpgsql;
"""

# Ledger rows are frozen, except that deleting an image nulls image_id
# through the ON DELETE SET NULL foreign key.
FN_CHECK_IMMUTABLE_LEDGER = """
CREATE OR REPLACE FUNCTION check_immutable_ledger()
RETURNS TRIGGER AS $$
BEGIN
    IF TG_OP = 'DELETE' THEN
        RAISE EXCEPTION 'Rows in table % are immutable', TG_TABLE_NAME;
    END IF;
    IF NEW.image_id IS NULL
       AND OLD.image_id IS NOT NULL
       AND NEW.txn_id      = OLD.txn_id
       AND NEW.user_id     = OLD.user_id
       AND NEW.amount      = OLD.amount
       AND NEW.txn_type    = OLD.txn_type
       AND NEW.description IS NOT DISTINCT FROM OLD.description
       AND NEW.payment_id  IS NOT DISTINCT FROM OLD.payment_id
       AND NEW.created_at  = OLD.created_at
    THEN
        RETURN NEW;
    END IF;
    RAISE EXCEPTION 'Rows in table % are immutable', TG_TABLE_NAME;
END;
$$ LANGUAGE plpgsql;
"""

FN_TOUCH_UPDATED_AT = """
CREATE OR REPLACE FUNCTION touch_updated_at()
RETURNS TRIGGER AS $$
BEGIN
    NEW.updated_at = now();
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""

FUNCTIONS_ALL = [
    FN_RAISE_IMMUTABLE,
    FN_CHECK_IMMUTABLE_LEDGER,
    FN_TOUCH_UPDATED_AT,
]

# ---- Triggers ----

TRIGGERS_ALL = [
    "CREATE TRIGGER trg_credit_transactions_immutable "
    "BEFORE UPDATE OR DELETE ON credit_transactions "
    "FOR EACH ROW EXECUTE FUNCTION check_immutable_ledger();",

    "CREATE TRIGGER trg_audit_logs_immutable "
    "BEFORE UPDATE OR DELETE ON audit_logs "
    "FOR EACH ROW EXECUTE FUNCTION raise_immutable_error();",

    "CREATE TRIGGER trg_users_touch "
    "BEFORE UPDATE ON users "
    "FOR EACH ROW EXECUTE FUNCTION touch_updated_at();",

    "CREATE TRIGGER trg_payments_touch "
    "BEFORE UPDATE ON payments "
    "FOR EACH ROW EXECUTE FUNCTION touch_updated_at();",

    "CREATE TRIGGER trg_folders_touch "
    "BEFORE UPDATE ON folders "
    "FOR EACH ROW EXECUTE FUNCTION touch_updated_at();",
]
