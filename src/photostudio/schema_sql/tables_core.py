"""CREATE TABLE statements for users, payments, and the audit log."""

USERS = """
CREATE TABLE users (
    user_id     UUID PRIMARY KEY,
    email       VARCHAR(320) NOT NULL UNIQUE,
    name        VARCHAR(255),
    avatar_url  VARCHAR(1000),
    credits     INTEGER NOT NULL DEFAULT 0
                CONSTRAINT ck_users_credits_nonneg CHECK (credits >= 0),
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

PAYMENTS = """
CREATE TABLE payments (
    payment_id          UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id             UUID NOT NULL REFERENCES users(user_id),
    razorpay_order_id   VARCHAR(100) NOT NULL UNIQUE,
    razorpay_payment_id VARCHAR(100) UNIQUE,
    razorpay_signature  VARCHAR(255),
    amount_usd          NUMERIC(12, 4) NOT NULL,
    amount_inr          NUMERIC(12, 2) NOT NULL,
    credits_purchased   INTEGER NOT NULL
                        CONSTRAINT ck_payment_credits_positive CHECK (credits_purchased > 0),
    status              VARCHAR(20) NOT NULL DEFAULT 'created'
                        CONSTRAINT ck_payment_status
                        CHECK (status IN ('created', 'completed', 'failed', 'refunded')),
    payment_method      VARCHAR(50),
    payment_stage       VARCHAR(20) NOT NULL
                        CONSTRAINT ck_payment_stage
                        CHECK (payment_stage IN ('sandbox', 'production')),
    metadata            JSONB NOT NULL DEFAULT '{}'::jsonb,
    error_message       TEXT,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
    completed_at        TIMESTAMPTZ,
    updated_at          TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

AUDIT_LOGS = """
CREATE TABLE audit_logs (
    log_id        BIGSERIAL PRIMARY KEY,
    user_id       UUID,
    action        VARCHAR(100) NOT NULL,
    resource_type VARCHAR(50) NOT NULL,
    resource_id   VARCHAR(100),
    status        VARCHAR(20) NOT NULL
                  CONSTRAINT ck_audit_status
                  CHECK (status IN ('success', 'failure', 'error')),
    ip_address    VARCHAR(100) NOT NULL DEFAULT 'unknown',
    user_agent    TEXT NOT NULL DEFAULT 'unknown',
    metadata      JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

ALL = [
    USERS,
    PAYMENTS,
    AUDIT_LOGS,
]
