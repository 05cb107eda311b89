"""Initial schema for the Vault ledger mirror."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from alembic import op

logger = logging.getLogger(__name__)

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


TABLE_DDL: tuple[str, ...] = (
    """
    CREATE TABLE deposit_record (
        transaction_hash TEXT NOT NULL,
        log_index INTEGER NOT NULL,
        user_address TEXT NOT NULL,
        amount TEXT NOT NULL,
        block_number BIGINT NOT NULL,
        block_timestamp BIGINT NOT NULL,
        created_at_utc TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT pk_deposit_record PRIMARY KEY (transaction_hash, log_index),
        CONSTRAINT ck_deposit_record_user_lower CHECK (user_address = lower(user_address)),
        CONSTRAINT ck_deposit_record_block_nonneg CHECK (block_number >= 0),
        CONSTRAINT ck_deposit_record_log_index_nonneg CHECK (log_index >= 0),
        CONSTRAINT ck_deposit_record_amount_not_blank CHECK (length(amount) > 0)
    );
    """,
    """
    CREATE TABLE withdraw_request (
        user_address TEXT NOT NULL,
        amount TEXT NOT NULL,
        unlock_time BIGINT NOT NULL,
        status TEXT NOT NULL,
        transaction_hash TEXT NOT NULL,
        block_number BIGINT NOT NULL,
        log_index INTEGER NOT NULL,
        updated_at_utc TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT pk_withdraw_request PRIMARY KEY (user_address),
        CONSTRAINT ck_withdraw_request_user_lower CHECK (user_address = lower(user_address)),
        CONSTRAINT ck_withdraw_request_status CHECK (status IN ('PENDING', 'COMPLETED')),
        CONSTRAINT ck_withdraw_request_unlock_nonneg CHECK (unlock_time >= 0)
    );
    """,
    """
    CREATE TABLE ingestion_checkpoint (
        event_kind TEXT NOT NULL,
        last_processed_block BIGINT NOT NULL,
        updated_at_utc TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT pk_ingestion_checkpoint PRIMARY KEY (event_kind),
        CONSTRAINT ck_ingestion_checkpoint_kind CHECK (event_kind IN ('Deposited', 'WithdrawRequested')),
        CONSTRAINT ck_ingestion_checkpoint_block_nonneg CHECK (last_processed_block >= 0)
    );
    """,
    """
    CREATE TABLE skipped_ledger_event (
        transaction_hash TEXT NOT NULL,
        log_index INTEGER NOT NULL,
        event_kind TEXT NOT NULL,
        block_number BIGINT NOT NULL,
        reason TEXT NOT NULL,
        skipped_at_utc TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT pk_skipped_ledger_event PRIMARY KEY (transaction_hash, log_index)
    );
    """,
)

INDEX_DDL: tuple[str, ...] = (
    "CREATE INDEX ix_deposit_record_user_block ON deposit_record (user_address, block_number);",
)

APPEND_ONLY_DDL: tuple[str, ...] = (
    """
    CREATE OR REPLACE FUNCTION fn_enforce_append_only()
    RETURNS trigger
    LANGUAGE plpgsql
    AS $$
    BEGIN
        RAISE EXCEPTION 'append-only table: % on %', TG_OP, TG_TABLE_NAME;
    END;
    $$;
    """,
    """
    CREATE TRIGGER trg_deposit_record_append_only
    BEFORE UPDATE ON deposit_record
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
)


def _execute_all(statements: Sequence[str]) -> None:
    """Execute an ordered sequence of SQL statements."""

    for statement in statements:
        try:
            op.execute(statement)
        except Exception:
            logger.exception("Migration statement failed.")
            raise


def upgrade() -> None:
    """Apply the initial mirror schema."""

    logger.info("Starting initial schema migration upgrade.")
    _execute_all(TABLE_DDL)
    _execute_all(INDEX_DDL)
    _execute_all(APPEND_ONLY_DDL)
    logger.info("Completed initial schema migration upgrade.")


def downgrade() -> None:
    """Revert the initial mirror schema."""

    logger.info("Starting initial schema migration downgrade.")
    _execute_all(
        (
            "DROP TRIGGER IF EXISTS trg_deposit_record_append_only ON deposit_record;",
            "DROP FUNCTION IF EXISTS fn_enforce_append_only();",
            "DROP TABLE IF EXISTS skipped_ledger_event;",
            "DROP TABLE IF EXISTS ingestion_checkpoint;",
            "DROP TABLE IF EXISTS withdraw_request;",
            "DROP TABLE IF EXISTS deposit_record;",
        )
    )
    logger.info("Completed initial schema migration downgrade.")
