"""All CREATE INDEX statements for the initial schema."""

ALL = [
    # payments
    "CREATE INDEX idx_payments_user ON payments(user_id, created_at DESC);",
    "CREATE INDEX idx_payments_stale ON payments(created_at) WHERE status = 'created';",
    # credit_transactions
    "CREATE INDEX idx_credit_txn_user ON credit_transactions(user_id, created_at DESC);",
    "CREATE INDEX idx_credit_txn_payment ON credit_transactions(payment_id) "
    "WHERE payment_id IS NOT NULL;",
    # audit_logs
    "CREATE INDEX idx_audit_user ON audit_logs(user_id, created_at DESC);",
    "CREATE INDEX idx_audit_action ON audit_logs(action, created_at DESC);",
    # folders / images
    "CREATE INDEX idx_folders_user ON folders(user_id, created_at DESC);",
    "CREATE INDEX idx_images_user ON images(user_id, created_at DESC);",
    "CREATE INDEX idx_images_folder ON images(folder_id) WHERE folder_id IS NOT NULL;",
]
