from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
import logging

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    delete,
    event,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from networth.dates import utcnow
from networth.errors import ConflictError, ImportFormatError, NotFoundError
from networth.migrations import add_missing_columns, migrate_legacy_schema
from networth.schemas import (
    DEFAULT_ACCOUNT_NAME,
    DEFAULT_ACCOUNT_TYPE,
    DEFAULT_ASSET_COLOR,
    DEFAULT_BANK_COLOR,
    DEFAULT_COUNTRIES,
    DEFAULT_COUNTRY,
    DEFAULT_CURRENCIES,
    DEFAULT_LOG_CURRENCY,
    DEFAULT_OWNER_NAME,
    Account,
    AccountDetail,
    AccountPayload,
    AccountUpdatePayload,
    Asset,
    AssetDetail,
    AssetLog,
    AssetLogPayload,
    AssetLogUpdatePayload,
    AssetPayload,
    AssetSummary,
    AssetUpdatePayload,
    BalanceLog,
    BalanceLogPayload,
    BalanceLogUpdatePayload,
    Bank,
    BankDetail,
    BankPayload,
    BankSummary,
    BankUpdatePayload,
    ConfigOptionPayload,
    ConfigOptions,
    Dataset,
    FXRateRecord,
    FXRatesPayload,
    Owner,
    OwnerPayload,
    check_dataset,
)

logger = logging.getLogger(__name__)

metadata = MetaData()

owners = Table(
    "owners",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), unique=True, nullable=False),
)

config_options = Table(
    "config_options",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("type", String(20), nullable=False),
    Column("value", String(255), nullable=False),
    UniqueConstraint("type", "value", name="uq_config_options_type_value"),
)

fx_rates = Table(
    "fx_rates",
    metadata,
    Column("base_currency", String(3), primary_key=True),
    Column("target_currency", String(3), primary_key=True),
    Column("rate", Numeric(18, 8), nullable=False),
    Column("updated_at", DateTime, nullable=False, default=utcnow),
)

banks = Table(
    "banks",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", Integer, ForeignKey("owners.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("bank_name", String(255)),
    Column("institution_type", String(50)),
    Column("logo_color", String(20), default=DEFAULT_BANK_COLOR),
    Column("country", String(100), default=DEFAULT_COUNTRY),
    Column("last_updated", DateTime, default=utcnow),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("bank_id", Integer, ForeignKey("banks.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(50), nullable=False, default=DEFAULT_ACCOUNT_TYPE),
    Column("account_number", String(100)),
)

balance_logs = Table(
    "balance_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
    Column("balance", Numeric(18, 2), nullable=False),
    Column("currency", String(3), nullable=False, default=DEFAULT_LOG_CURRENCY),
    Column("comment", String(500)),
    Column("recorded_at", DateTime, nullable=False),
)

assets = Table(
    "assets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", Integer, ForeignKey("owners.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("asset_type", String(50), nullable=False),
    Column("value", Numeric(18, 2), nullable=False, default=Decimal("0")),
    Column("currency", String(3), nullable=False, default=DEFAULT_LOG_CURRENCY),
    Column("purchase_price", Numeric(18, 2)),
    Column("purchase_date", Date),
    Column("country", String(100), default=DEFAULT_COUNTRY),
    Column("notes", String(1000)),
    Column("logo_color", String(20), default=DEFAULT_ASSET_COLOR),
    Column("last_updated", DateTime, default=utcnow),
)

asset_logs = Table(
    "asset_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("asset_id", Integer, ForeignKey("assets.id", ondelete="CASCADE"), nullable=False),
    Column("type", String(20), nullable=False),
    Column("amount", Numeric(18, 2), nullable=False),
    Column("currency", String(3), nullable=False, default=DEFAULT_LOG_CURRENCY),
    Column("comment", String(500)),
    Column("recorded_at", DateTime, nullable=False),
)

# Children first, so deletes never trip a foreign key.
ENTITY_TABLES = [asset_logs, assets, balance_logs, accounts, banks, owners]


def create_store_engine(database_url: str) -> Engine:
    connect_args = {}
    engine_kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            engine_kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, connect_args=connect_args, **engine_kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def seed_defaults(conn: Connection) -> None:
    owner_count = conn.execute(select(func.count()).select_from(owners)).scalar_one()
    if owner_count == 0:
        logger.info("Seeding default owner")
        conn.execute(insert(owners).values(name=DEFAULT_OWNER_NAME))
    config_count = conn.execute(select(func.count()).select_from(config_options)).scalar_one()
    if config_count == 0:
        logger.info("Seeding default config options")
        conn.execute(insert(config_options), _default_config_rows())


def seed_demo_data(conn: Connection) -> None:
    bank_count = conn.execute(select(func.count()).select_from(banks)).scalar_one()
    if bank_count:
        return
    owner_id = conn.execute(select(owners.c.id).order_by(owners.c.id).limit(1)).scalar_one_or_none()
    if owner_id is None:
        return
    logger.info("Seeding demo data")
    now = utcnow()
    one_month_ago = now - timedelta(days=30)
    two_months_ago = now - timedelta(days=60)

    chase_id = conn.execute(
        insert(banks).values(
            owner_id=owner_id,
            name="Chase Main",
            bank_name="Chase Bank",
            logo_color="#117aca",
            country="USA",
        )
    ).inserted_primary_key[0]
    checking_id = conn.execute(
        insert(accounts).values(bank_id=chase_id, name="Checking", account_number="**** 1234")
    ).inserted_primary_key[0]
    savings_id = conn.execute(
        insert(accounts).values(bank_id=chase_id, name="Savings", account_number="**** 5678")
    ).inserted_primary_key[0]
    hsbc_id = conn.execute(
        insert(banks).values(
            owner_id=owner_id,
            name="HSBC HK",
            bank_name="HSBC",
            logo_color="#db0011",
            country="Hong Kong",
        )
    ).inserted_primary_key[0]
    hkd_savings_id = conn.execute(
        insert(accounts).values(bank_id=hsbc_id, name="HKD Savings", account_number="**** 9999")
    ).inserted_primary_key[0]

    conn.execute(
        insert(balance_logs),
        [
            _demo_log(checking_id, "5000", "USD", "Initial deposit", two_months_ago),
            _demo_log(checking_id, "7500", "USD", "Salary", one_month_ago),
            _demo_log(checking_id, "8200", "USD", "Current balance", now),
            _demo_log(savings_id, "10000", "USD", "Initial savings", one_month_ago),
            _demo_log(savings_id, "10050", "USD", "Interest", now),
            _demo_log(hkd_savings_id, "50000", "HKD", "Savings", now),
        ],
    )


def _demo_log(account_id, balance, currency, comment, recorded_at) -> dict:
    return {
        "account_id": account_id,
        "balance": Decimal(balance),
        "currency": currency,
        "comment": comment,
        "recorded_at": recorded_at,
    }


def _default_config_rows() -> list[dict]:
    return [{"type": "country", "value": value} for value in DEFAULT_COUNTRIES] + [
        {"type": "currency", "value": value} for value in DEFAULT_CURRENCIES
    ]


def _latest_balance_total():
    """Correlated subquery: sum of each account's latest balance for a bank row."""
    latest = balance_logs.alias("latest")
    latest_log_id = (
        select(latest.c.id)
        .where(latest.c.account_id == balance_logs.c.account_id)
        .order_by(latest.c.recorded_at.desc(), latest.c.id.desc())
        .limit(1)
        .correlate(balance_logs)
        .scalar_subquery()
    )
    bank_account_ids = (
        select(accounts.c.id)
        .where(accounts.c.bank_id == banks.c.id)
        .correlate(banks)
    )
    return (
        select(func.coalesce(func.sum(balance_logs.c.balance), 0))
        .where(
            balance_logs.c.account_id.in_(bank_account_ids),
            balance_logs.c.id == latest_log_id,
        )
        .correlate(banks)
        .scalar_subquery()
    )


class SqlStore:
    """Canonical entity state in a relational database.

    Every public method runs in its own transaction; bulk writes (import,
    reset, FX upsert) are all-or-nothing.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def initialize(self, seed_demo: bool = False) -> None:
        logger.info("Initializing database schema")
        with self.engine.begin() as conn:
            migrate_legacy_schema(conn, metadata)
            metadata.create_all(conn)
            add_missing_columns(conn)
            seed_defaults(conn)
            if seed_demo:
                seed_demo_data(conn)

    def describe(self) -> str:
        return self.engine.url.render_as_string(hide_password=True)

    # Config options

    def get_config(self) -> ConfigOptions:
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(config_options.c.type, config_options.c.value).order_by(config_options.c.id)
            ).mappings().all()
        return ConfigOptions(
            countries=[row["value"] for row in rows if row["type"] == "country"],
            currencies=[row["value"] for row in rows if row["type"] == "currency"],
        )

    def add_config_option(self, payload: ConfigOptionPayload) -> None:
        payload = ConfigOptionPayload.validate_payload(payload)
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(config_options).values(type=payload.type, value=payload.value))
        except IntegrityError as exc:
            raise ConflictError("Option already exists.") from exc

    def delete_config_option(self, payload: ConfigOptionPayload) -> None:
        payload = ConfigOptionPayload.validate_payload(payload)
        with self.engine.begin() as conn:
            conn.execute(
                delete(config_options).where(
                    config_options.c.type == payload.type,
                    config_options.c.value == payload.value,
                )
            )

    # FX rates

    def list_fx_rates(self) -> list[FXRateRecord]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(fx_rates).order_by(fx_rates.c.base_currency, fx_rates.c.target_currency)
            ).mappings().all()
        return [FXRateRecord(**row) for row in rows]

    def upsert_fx_rates(self, payload: FXRatesPayload) -> int:
        payload = FXRatesPayload.validate_payload(payload)
        now = utcnow()
        with self.engine.begin() as conn:
            for entry in payload.rates:
                key = (
                    fx_rates.c.base_currency == entry.base,
                    fx_rates.c.target_currency == entry.target,
                )
                result = conn.execute(update(fx_rates).where(*key).values(rate=entry.rate, updated_at=now))
                if result.rowcount == 0:
                    conn.execute(
                        insert(fx_rates).values(
                            base_currency=entry.base,
                            target_currency=entry.target,
                            rate=entry.rate,
                            updated_at=now,
                        )
                    )
        return len(payload.rates)

    # Owners

    def list_owners(self) -> list[Owner]:
        with self.engine.begin() as conn:
            rows = conn.execute(select(owners).order_by(owners.c.id)).mappings().all()
        return [Owner(**row) for row in rows]

    def get_owner(self, owner_id: int) -> Owner:
        with self.engine.begin() as conn:
            row = conn.execute(select(owners).where(owners.c.id == owner_id)).mappings().first()
        if not row:
            raise NotFoundError("Owner not found.")
        return Owner(**row)

    def create_owner(self, payload: OwnerPayload) -> Owner:
        payload = OwnerPayload.validate_payload(payload)
        stmt = insert(owners).values(name=payload.name).returning(owners.c.id, owners.c.name)
        try:
            with self.engine.begin() as conn:
                row = conn.execute(stmt).mappings().first()
        except IntegrityError as exc:
            raise ConflictError("Owner already exists.") from exc
        return Owner(**row)

    def update_owner(self, owner_id: int, payload: OwnerPayload) -> Owner:
        payload = OwnerPayload.validate_payload(payload)
        stmt = (
            update(owners)
            .where(owners.c.id == owner_id)
            .values(name=payload.name)
            .returning(owners.c.id, owners.c.name)
        )
        try:
            with self.engine.begin() as conn:
                row = conn.execute(stmt).mappings().first()
        except IntegrityError as exc:
            raise ConflictError("Owner already exists.") from exc
        if not row:
            raise NotFoundError("Owner not found.")
        return Owner(**row)

    def delete_owner(self, owner_id: int) -> int:
        with self.engine.begin() as conn:
            return conn.execute(delete(owners).where(owners.c.id == owner_id)).rowcount

    # Banks

    def list_banks(self) -> list[BankSummary]:
        account_count = (
            select(func.count(accounts.c.id))
            .where(accounts.c.bank_id == banks.c.id)
            .correlate(banks)
            .scalar_subquery()
        )
        stmt = (
            select(
                banks,
                owners.c.name.label("owner_name"),
                _latest_balance_total().label("total_balance"),
                account_count.label("account_count"),
            )
            .select_from(banks.join(owners, banks.c.owner_id == owners.c.id))
            .order_by(banks.c.last_updated.desc(), banks.c.id.desc())
        )
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [BankSummary(**row) for row in rows]

    def get_bank(self, bank_id: int) -> BankDetail:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(banks, owners.c.name.label("owner_name"))
                .select_from(banks.join(owners, banks.c.owner_id == owners.c.id))
                .where(banks.c.id == bank_id)
            ).mappings().first()
            if not row:
                raise NotFoundError("Bank not found.")
            account_rows = conn.execute(
                select(accounts).where(accounts.c.bank_id == bank_id).order_by(accounts.c.id)
            ).mappings().all()
            log_rows = conn.execute(
                select(balance_logs)
                .join(accounts, balance_logs.c.account_id == accounts.c.id)
                .where(accounts.c.bank_id == bank_id)
                .order_by(balance_logs.c.recorded_at.desc(), balance_logs.c.id.desc())
            ).mappings().all()

        logs_by_account: dict[int, list[BalanceLog]] = {}
        for log_row in log_rows:
            logs_by_account.setdefault(log_row["account_id"], []).append(BalanceLog(**log_row))
        return BankDetail(
            **row,
            accounts=[
                AccountDetail(**account_row, logs=logs_by_account.get(account_row["id"], []))
                for account_row in account_rows
            ],
        )

    def create_bank(self, payload: BankPayload) -> Bank:
        payload = BankPayload.validate_payload(payload)
        with self.engine.begin() as conn:
            self._require_owner(conn, payload.owner_id)
            row = conn.execute(
                insert(banks)
                .values(**payload.model_dump(), last_updated=utcnow())
                .returning(*banks.c)
            ).mappings().first()
            conn.execute(
                insert(accounts).values(
                    bank_id=row["id"], name=DEFAULT_ACCOUNT_NAME, type=DEFAULT_ACCOUNT_TYPE
                )
            )
        return Bank(**row)

    def update_bank(self, bank_id: int, payload: BankUpdatePayload) -> Bank:
        payload = BankUpdatePayload.validate_payload(payload)
        changes = payload.changes()
        with self.engine.begin() as conn:
            if "owner_id" in changes:
                self._require_owner(conn, changes["owner_id"])
            row = conn.execute(
                update(banks)
                .where(banks.c.id == bank_id)
                .values(**changes, last_updated=utcnow())
                .returning(*banks.c)
            ).mappings().first()
        if not row:
            raise NotFoundError("Bank not found.")
        return Bank(**row)

    def delete_bank(self, bank_id: int) -> int:
        with self.engine.begin() as conn:
            return conn.execute(delete(banks).where(banks.c.id == bank_id)).rowcount

    # Accounts

    def create_account(self, payload: AccountPayload) -> Account:
        payload = AccountPayload.validate_payload(payload)
        with self.engine.begin() as conn:
            bank_exists = conn.execute(select(banks.c.id).where(banks.c.id == payload.bank_id)).first()
            if not bank_exists:
                raise NotFoundError("Bank not found.")
            row = conn.execute(
                insert(accounts).values(**payload.model_dump()).returning(*accounts.c)
            ).mappings().first()
        return Account(**row)

    def update_account(self, account_id: int, payload: AccountUpdatePayload) -> Account:
        payload = AccountUpdatePayload.validate_payload(payload)
        changes = payload.changes()
        with self.engine.begin() as conn:
            if changes:
                row = conn.execute(
                    update(accounts)
                    .where(accounts.c.id == account_id)
                    .values(**changes)
                    .returning(*accounts.c)
                ).mappings().first()
            else:
                row = conn.execute(
                    select(accounts).where(accounts.c.id == account_id)
                ).mappings().first()
        if not row:
            raise NotFoundError("Account not found.")
        return Account(**row)

    def delete_account(self, account_id: int) -> int:
        with self.engine.begin() as conn:
            return conn.execute(delete(accounts).where(accounts.c.id == account_id)).rowcount

    # Balance logs

    def create_log(self, payload: BalanceLogPayload) -> BalanceLog:
        payload = BalanceLogPayload.validate_payload(payload)
        with self.engine.begin() as conn:
            account_exists = conn.execute(
                select(accounts.c.id).where(accounts.c.id == payload.account_id)
            ).first()
            if not account_exists:
                raise NotFoundError("Account not found.")
            row = conn.execute(
                insert(balance_logs).values(**payload.model_dump()).returning(*balance_logs.c)
            ).mappings().first()
            self._touch_bank(conn, payload.account_id)
        return BalanceLog(**row)

    def update_log(self, log_id: int, payload: BalanceLogUpdatePayload) -> BalanceLog:
        payload = BalanceLogUpdatePayload.validate_payload(payload)
        changes = payload.changes()
        with self.engine.begin() as conn:
            if changes:
                row = conn.execute(
                    update(balance_logs)
                    .where(balance_logs.c.id == log_id)
                    .values(**changes)
                    .returning(*balance_logs.c)
                ).mappings().first()
            else:
                row = conn.execute(
                    select(balance_logs).where(balance_logs.c.id == log_id)
                ).mappings().first()
            if not row:
                raise NotFoundError("Log not found.")
            self._touch_bank(conn, row["account_id"])
        return BalanceLog(**row)

    def delete_log(self, log_id: int) -> int:
        with self.engine.begin() as conn:
            account_id = conn.execute(
                select(balance_logs.c.account_id).where(balance_logs.c.id == log_id)
            ).scalar_one_or_none()
            if account_id is None:
                return 0
            conn.execute(delete(balance_logs).where(balance_logs.c.id == log_id))
            self._touch_bank(conn, account_id)
        return 1

    # Assets

    def list_assets(self) -> list[AssetSummary]:
        log_count = (
            select(func.count(asset_logs.c.id))
            .where(asset_logs.c.asset_id == assets.c.id)
            .correlate(assets)
            .scalar_subquery()
        )
        stmt = (
            select(assets, owners.c.name.label("owner_name"), log_count.label("log_count"))
            .select_from(assets.join(owners, assets.c.owner_id == owners.c.id))
            .order_by(assets.c.last_updated.desc(), assets.c.id.desc())
        )
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [AssetSummary(**row) for row in rows]

    def get_asset(self, asset_id: int) -> AssetDetail:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(assets, owners.c.name.label("owner_name"))
                .select_from(assets.join(owners, assets.c.owner_id == owners.c.id))
                .where(assets.c.id == asset_id)
            ).mappings().first()
            if not row:
                raise NotFoundError("Asset not found.")
            log_rows = conn.execute(
                select(asset_logs)
                .where(asset_logs.c.asset_id == asset_id)
                .order_by(asset_logs.c.recorded_at.desc(), asset_logs.c.id.desc())
            ).mappings().all()
        return AssetDetail(**row, logs=[AssetLog(**log_row) for log_row in log_rows])

    def create_asset(self, payload: AssetPayload) -> Asset:
        payload = AssetPayload.validate_payload(payload)
        with self.engine.begin() as conn:
            self._require_owner(conn, payload.owner_id)
            row = conn.execute(
                insert(assets)
                .values(**payload.model_dump(), last_updated=utcnow())
                .returning(*assets.c)
            ).mappings().first()
        return Asset(**row)

    def update_asset(self, asset_id: int, payload: AssetUpdatePayload) -> Asset:
        payload = AssetUpdatePayload.validate_payload(payload)
        changes = payload.changes()
        with self.engine.begin() as conn:
            if "owner_id" in changes:
                self._require_owner(conn, changes["owner_id"])
            row = conn.execute(
                update(assets)
                .where(assets.c.id == asset_id)
                .values(**changes, last_updated=utcnow())
                .returning(*assets.c)
            ).mappings().first()
            if row:
                self._sync_asset(conn, asset_id)
                row = conn.execute(select(assets).where(assets.c.id == asset_id)).mappings().first()
        if not row:
            raise NotFoundError("Asset not found.")
        return Asset(**row)

    def delete_asset(self, asset_id: int) -> int:
        with self.engine.begin() as conn:
            return conn.execute(delete(assets).where(assets.c.id == asset_id)).rowcount

    # Asset logs

    def create_asset_log(self, payload: AssetLogPayload) -> AssetLog:
        payload = AssetLogPayload.validate_payload(payload)
        with self.engine.begin() as conn:
            asset_exists = conn.execute(select(assets.c.id).where(assets.c.id == payload.asset_id)).first()
            if not asset_exists:
                raise NotFoundError("Asset not found.")
            row = conn.execute(
                insert(asset_logs).values(**payload.model_dump()).returning(*asset_logs.c)
            ).mappings().first()
            self._sync_asset(conn, payload.asset_id)
        return AssetLog(**row)

    def update_asset_log(self, log_id: int, payload: AssetLogUpdatePayload) -> AssetLog:
        payload = AssetLogUpdatePayload.validate_payload(payload)
        changes = payload.changes()
        with self.engine.begin() as conn:
            if changes:
                row = conn.execute(
                    update(asset_logs)
                    .where(asset_logs.c.id == log_id)
                    .values(**changes)
                    .returning(*asset_logs.c)
                ).mappings().first()
            else:
                row = conn.execute(select(asset_logs).where(asset_logs.c.id == log_id)).mappings().first()
            if not row:
                raise NotFoundError("Asset log not found.")
            self._sync_asset(conn, row["asset_id"])
        return AssetLog(**row)

    def delete_asset_log(self, log_id: int) -> int:
        with self.engine.begin() as conn:
            asset_id = conn.execute(
                select(asset_logs.c.asset_id).where(asset_logs.c.id == log_id)
            ).scalar_one_or_none()
            if asset_id is None:
                return 0
            conn.execute(delete(asset_logs).where(asset_logs.c.id == log_id))
            self._sync_asset(conn, asset_id)
        return 1

    # Bulk operations

    def export_dataset(self) -> Dataset:
        with self.engine.begin() as conn:

            def fetch(table, *order_by):
                return conn.execute(select(table).order_by(*order_by)).mappings().all()

            owner_rows = fetch(owners, owners.c.id)
            bank_rows = fetch(banks, banks.c.id)
            account_rows = fetch(accounts, accounts.c.id)
            log_rows = fetch(balance_logs, balance_logs.c.id)
            asset_rows = fetch(assets, assets.c.id)
            asset_log_rows = fetch(asset_logs, asset_logs.c.id)
            fx_rows = fetch(fx_rates, fx_rates.c.base_currency, fx_rates.c.target_currency)
        return Dataset(
            owners=[Owner(**row) for row in owner_rows],
            banks=[Bank(**row) for row in bank_rows],
            accounts=[Account(**row) for row in account_rows],
            logs=[BalanceLog(**row) for row in log_rows],
            assets=[Asset(**row) for row in asset_rows],
            asset_logs=[AssetLog(**row) for row in asset_log_rows],
            config=self.get_config(),
            fx_rates=[FXRateRecord(**row) for row in fx_rows],
        )

    def import_dataset(self, dataset: Dataset) -> None:
        check_dataset(dataset)
        try:
            with self.engine.begin() as conn:
                for table in ENTITY_TABLES:
                    conn.execute(delete(table))
                self._insert_rows(conn, owners, dataset.owners)
                self._insert_rows(conn, banks, dataset.banks)
                self._insert_rows(conn, accounts, dataset.accounts)
                self._insert_rows(conn, balance_logs, dataset.logs)
                self._insert_rows(conn, assets, dataset.assets)
                self._insert_rows(conn, asset_logs, dataset.asset_logs)
                if dataset.config is not None:
                    conn.execute(delete(config_options))
                    rows = [{"type": "country", "value": value} for value in dataset.config.countries]
                    rows += [{"type": "currency", "value": value} for value in dataset.config.currencies]
                    if rows:
                        conn.execute(insert(config_options), rows)
                if dataset.fx_rates is not None:
                    conn.execute(delete(fx_rates))
                    now = utcnow()
                    rows = [
                        {**record.model_dump(), "updated_at": record.updated_at or now}
                        for record in dataset.fx_rates
                    ]
                    if rows:
                        conn.execute(insert(fx_rates), rows)
        except IntegrityError as exc:
            logger.exception("Import rolled back")
            raise ImportFormatError("Import failed.") from exc
        logger.info(
            "Imported %d owners, %d banks, %d accounts, %d logs, %d assets",
            len(dataset.owners),
            len(dataset.banks),
            len(dataset.accounts),
            len(dataset.logs),
            len(dataset.assets),
        )

    def reset(self) -> None:
        with self.engine.begin() as conn:
            for table in ENTITY_TABLES:
                conn.execute(delete(table))
            conn.execute(delete(fx_rates))
            conn.execute(delete(config_options))
            seed_defaults(conn)
        logger.info("Database reset")

    # Helpers

    @staticmethod
    def _insert_rows(conn: Connection, table: Table, records) -> None:
        rows = [record.model_dump() for record in records]
        if rows:
            conn.execute(insert(table), rows)

    @staticmethod
    def _require_owner(conn: Connection, owner_id: int) -> None:
        if not conn.execute(select(owners.c.id).where(owners.c.id == owner_id)).first():
            raise NotFoundError("Owner not found.")

    @staticmethod
    def _touch_bank(conn: Connection, account_id: int) -> None:
        bank_id = select(accounts.c.bank_id).where(accounts.c.id == account_id).scalar_subquery()
        conn.execute(update(banks).where(banks.c.id == bank_id).values(last_updated=utcnow()))

    @staticmethod
    def _sync_asset(conn: Connection, asset_id: int) -> None:
        values = {"last_updated": utcnow()}
        latest = conn.execute(
            select(asset_logs.c.amount, asset_logs.c.currency)
            .where(asset_logs.c.asset_id == asset_id, asset_logs.c.type == "Valuation")
            .order_by(asset_logs.c.recorded_at.desc(), asset_logs.c.id.desc())
            .limit(1)
        ).mappings().first()
        if latest:
            values.update(value=latest["amount"], currency=latest["currency"])
        conn.execute(update(assets).where(assets.c.id == asset_id).values(**values))
