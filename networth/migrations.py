"""Startup schema upgrades for databases written by older releases.

The oldest layout kept one account per bank: an ``accounts`` table carrying
``owner_id`` and the bank fields directly, with ``balance_logs`` pointing
at it. Those rows are rewritten into ``banks`` + ``accounts`` with a single
"Default Account" per bank.
"""
from __future__ import annotations

from decimal import Decimal
import logging

from sqlalchemy import MetaData, inspect, text
from sqlalchemy.engine import Connection

from networth.dates import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

LEGACY_ACCOUNTS = "old_accounts_migration"
LEGACY_LOGS = "old_balance_logs_migration"


def is_legacy_schema(conn: Connection) -> bool:
    inspector = inspect(conn)
    if not inspector.has_table("accounts"):
        return False
    columns = {column["name"] for column in inspector.get_columns("accounts")}
    return "owner_id" in columns


def migrate_legacy_schema(conn: Connection, metadata: MetaData) -> bool:
    """Rewrite a single-account-per-bank database in place.

    Runs inside the caller's transaction. Returns True when a migration
    happened.
    """
    if not is_legacy_schema(conn):
        return False
    logger.info("Migrating to multi-account schema")

    has_logs = inspect(conn).has_table("balance_logs")
    conn.execute(text(f"ALTER TABLE accounts RENAME TO {LEGACY_ACCOUNTS}"))
    if has_logs:
        conn.execute(text(f"ALTER TABLE balance_logs RENAME TO {LEGACY_LOGS}"))
    metadata.create_all(conn)
    banks = metadata.tables["banks"]
    accounts = metadata.tables["accounts"]
    balance_logs = metadata.tables["balance_logs"]

    account_map: dict[int, int] = {}
    old_rows = conn.execute(text(f"SELECT * FROM {LEGACY_ACCOUNTS} ORDER BY id")).mappings().all()
    for row in old_rows:
        bank_id = conn.execute(
            banks.insert().values(
                owner_id=row["owner_id"],
                name=row["name"],
                bank_name=row.get("bank_name"),
                logo_color=row.get("logo_color") or "#3b82f6",
                country=row.get("country") or "USA",
                last_updated=_timestamp_or_now(row.get("last_updated")),
            )
        ).inserted_primary_key[0]
        account_map[row["id"]] = conn.execute(
            accounts.insert().values(
                bank_id=bank_id,
                name="Default Account",
                type=row.get("type") or "Bank",
                account_number=row.get("account_number"),
            )
        ).inserted_primary_key[0]

    moved = 0
    if has_logs:
        log_rows = conn.execute(text(f"SELECT * FROM {LEGACY_LOGS} ORDER BY id")).mappings().all()
        for row in log_rows:
            new_account_id = account_map.get(row["account_id"])
            if new_account_id is None:
                logger.warning("Dropping orphaned balance log %s", row["id"])
                continue
            conn.execute(
                balance_logs.insert().values(
                    id=row["id"],
                    account_id=new_account_id,
                    balance=Decimal(str(row["balance"])),
                    currency=row.get("currency") or "USD",
                    comment=row.get("comment"),
                    recorded_at=parse_timestamp(str(row["recorded_at"])),
                )
            )
            moved += 1
        conn.execute(text(f"DROP TABLE {LEGACY_LOGS}"))
    conn.execute(text(f"DROP TABLE {LEGACY_ACCOUNTS}"))
    logger.info("Migration completed: %d banks, %d balance logs", len(old_rows), moved)
    return True


def add_missing_columns(conn: Connection) -> None:
    inspector = inspect(conn)
    log_columns = {column["name"] for column in inspector.get_columns("balance_logs")}
    if "comment" not in log_columns:
        logger.info("Adding balance_logs.comment")
        conn.execute(text("ALTER TABLE balance_logs ADD COLUMN comment VARCHAR(500)"))
    bank_columns = {column["name"] for column in inspector.get_columns("banks")}
    if "institution_type" not in bank_columns:
        logger.info("Adding banks.institution_type")
        conn.execute(text("ALTER TABLE banks ADD COLUMN institution_type VARCHAR(50)"))


def _timestamp_or_now(value):
    if not value:
        return utcnow()
    return parse_timestamp(str(value))
