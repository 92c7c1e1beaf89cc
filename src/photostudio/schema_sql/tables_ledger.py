"""CREATE TABLE statement for the append-only credit ledger."""

CREDIT_TRANSACTIONS = """
CREATE TABLE credit_transactions (
    txn_id      BIGSERIAL PRIMARY KEY,
    user_id     UUID NOT NULL REFERENCES users(user_id),
    amount      INTEGER NOT NULL,
    txn_type    VARCHAR(20) NOT NULL
                CONSTRAINT ck_credit_txn_type
                CHECK (txn_type IN ('bonus', 'purchase', 'usage', 'refund')),
    description TEXT,
    payment_id  UUID REFERENCES payments(payment_id),
    image_id    UUID REFERENCES images(image_id) ON DELETE SET NULL,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

ALL = [
    CREDIT_TRANSACTIONS,
]
