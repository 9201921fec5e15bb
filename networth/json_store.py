"""Document-style store: the whole dataset kept in memory and persisted as JSON.

Every mutation works on a deep copy of the current state and only swaps it
in after the backend has persisted it, so a failure leaves the previous
state untouched.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
import logging
import os
from pathlib import Path
import tempfile
import threading
from typing import Callable, Optional, Protocol

from networth.balance_aggregation import Snapshot, current_value, latest_valuation
from networth.dates import utcnow
from networth.errors import ConflictError, NotFoundError
from networth.schemas import (
    DEFAULT_ACCOUNT_NAME,
    DEFAULT_ACCOUNT_TYPE,
    DEFAULT_COUNTRIES,
    DEFAULT_CURRENCIES,
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


class StorageBackend(Protocol):
    def load(self) -> Optional[str]: ...

    def save(self, document: str) -> None: ...


class MemoryBackend:
    def __init__(self, document: Optional[str] = None) -> None:
        self.document = document

    def load(self) -> Optional[str]:
        return self.document

    def save(self, document: str) -> None:
        self.document = document


class JsonFileBackend:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> Optional[str]:
        if not self.path.exists():
            return None
        return self.path.read_text(encoding="utf-8")

    def save(self, document: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(document)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


def _next_id(records) -> int:
    return max((record.id for record in records), default=0) + 1


def _find(records, record_id: int, message: str):
    for record in records:
        if record.id == record_id:
            return record
    raise NotFoundError(message)


def _recent_first(record) -> tuple:
    return (record.last_updated or datetime.min, record.id)


def _log_order(log) -> tuple:
    return (log.recorded_at, log.id)


class JsonStore:
    def __init__(self, backend: StorageBackend) -> None:
        self.backend = backend
        self.state = Dataset(owners=[], banks=[], accounts=[], logs=[])
        # Request handlers run in a threadpool; mutations must not interleave.
        self._lock = threading.RLock()

    def initialize(self, seed_demo: bool = False) -> None:
        with self._lock:
            document = self.backend.load()
            if document:
                self.state = Dataset.model_validate_json(document)
            state = self.state.model_copy(deep=True)
            _seed_defaults(state)
            if seed_demo:
                _seed_demo_data(state)
            self._commit(state)

    def describe(self) -> str:
        path = getattr(self.backend, "path", None)
        return str(path) if path else "memory"

    def _mutate(self, change: Callable[[Dataset], object]):
        with self._lock:
            state = self.state.model_copy(deep=True)
            result = change(state)
            self._commit(state)
        return result

    def _commit(self, state: Dataset) -> None:
        with self._lock:
            self.backend.save(state.model_dump_json(indent=2))
            self.state = state

    # Config options

    def get_config(self) -> ConfigOptions:
        return (self.state.config or ConfigOptions()).model_copy(deep=True)

    def add_config_option(self, payload: ConfigOptionPayload) -> None:
        payload = ConfigOptionPayload.validate_payload(payload)

        def change(state: Dataset) -> None:
            config = state.config or ConfigOptions()
            values = config.countries if payload.type == "country" else config.currencies
            if payload.value in values:
                raise ConflictError("Option already exists.")
            values.append(payload.value)
            state.config = config

        self._mutate(change)

    def delete_config_option(self, payload: ConfigOptionPayload) -> None:
        payload = ConfigOptionPayload.validate_payload(payload)

        def change(state: Dataset) -> None:
            config = state.config or ConfigOptions()
            if payload.type == "country":
                config.countries = [value for value in config.countries if value != payload.value]
            else:
                config.currencies = [value for value in config.currencies if value != payload.value]
            state.config = config

        self._mutate(change)

    # FX rates

    def list_fx_rates(self) -> list[FXRateRecord]:
        rates = self.state.fx_rates or []
        return sorted(
            (rate.model_copy() for rate in rates),
            key=lambda rate: (rate.base_currency, rate.target_currency),
        )

    def upsert_fx_rates(self, payload: FXRatesPayload) -> int:
        payload = FXRatesPayload.validate_payload(payload)
        now = utcnow()

        def change(state: Dataset) -> None:
            by_key = {
                (rate.base_currency, rate.target_currency): rate for rate in state.fx_rates or []
            }
            for entry in payload.rates:
                by_key[(entry.base, entry.target)] = FXRateRecord(
                    base_currency=entry.base,
                    target_currency=entry.target,
                    rate=entry.rate,
                    updated_at=now,
                )
            state.fx_rates = list(by_key.values())

        self._mutate(change)
        return len(payload.rates)

    # Owners

    def list_owners(self) -> list[Owner]:
        return [owner.model_copy() for owner in self.state.owners]

    def get_owner(self, owner_id: int) -> Owner:
        return _find(self.state.owners, owner_id, "Owner not found.").model_copy()

    def create_owner(self, payload: OwnerPayload) -> Owner:
        payload = OwnerPayload.validate_payload(payload)

        def change(state: Dataset) -> Owner:
            if any(owner.name == payload.name for owner in state.owners):
                raise ConflictError("Owner already exists.")
            owner = Owner(id=_next_id(state.owners), name=payload.name)
            state.owners.append(owner)
            return owner.model_copy()

        return self._mutate(change)

    def update_owner(self, owner_id: int, payload: OwnerPayload) -> Owner:
        payload = OwnerPayload.validate_payload(payload)

        def change(state: Dataset) -> Owner:
            owner = _find(state.owners, owner_id, "Owner not found.")
            if any(other.name == payload.name and other.id != owner_id for other in state.owners):
                raise ConflictError("Owner already exists.")
            owner.name = payload.name
            return owner.model_copy()

        return self._mutate(change)

    def delete_owner(self, owner_id: int) -> int:
        def change(state: Dataset) -> int:
            before = len(state.owners)
            state.owners = [owner for owner in state.owners if owner.id != owner_id]
            bank_ids = {bank.id for bank in state.banks if bank.owner_id == owner_id}
            asset_ids = {asset.id for asset in state.assets if asset.owner_id == owner_id}
            _drop_banks(state, bank_ids)
            _drop_assets(state, asset_ids)
            return before - len(state.owners)

        return self._mutate(change)

    # Banks

    def list_banks(self) -> list[BankSummary]:
        owner_names = {owner.id: owner.name for owner in self.state.owners}
        summaries = []
        for bank in sorted(self.state.banks, key=_recent_first, reverse=True):
            bank_accounts = [account for account in self.state.accounts if account.bank_id == bank.id]
            total = Decimal("0")
            for account in bank_accounts:
                latest = current_value(_snapshots(self.state.logs, account.id))
                if latest is not None:
                    total += latest.amount
            summaries.append(
                BankSummary(
                    **bank.model_dump(),
                    owner_name=owner_names.get(bank.owner_id),
                    total_balance=total,
                    account_count=len(bank_accounts),
                )
            )
        return summaries

    def get_bank(self, bank_id: int) -> BankDetail:
        bank = _find(self.state.banks, bank_id, "Bank not found.")
        owner_names = {owner.id: owner.name for owner in self.state.owners}
        account_details = []
        for account in sorted(self.state.accounts, key=lambda account: account.id):
            if account.bank_id != bank_id:
                continue
            logs = sorted(
                (log for log in self.state.logs if log.account_id == account.id),
                key=_log_order,
                reverse=True,
            )
            account_details.append(
                AccountDetail(**account.model_dump(), logs=[log.model_copy() for log in logs])
            )
        return BankDetail(
            **bank.model_dump(),
            owner_name=owner_names.get(bank.owner_id),
            accounts=account_details,
        )

    def create_bank(self, payload: BankPayload) -> Bank:
        payload = BankPayload.validate_payload(payload)

        def change(state: Dataset) -> Bank:
            _find(state.owners, payload.owner_id, "Owner not found.")
            bank = Bank(id=_next_id(state.banks), last_updated=utcnow(), **payload.model_dump())
            state.banks.append(bank)
            state.accounts.append(
                Account(
                    id=_next_id(state.accounts),
                    bank_id=bank.id,
                    name=DEFAULT_ACCOUNT_NAME,
                    type=DEFAULT_ACCOUNT_TYPE,
                )
            )
            return bank.model_copy()

        return self._mutate(change)

    def update_bank(self, bank_id: int, payload: BankUpdatePayload) -> Bank:
        payload = BankUpdatePayload.validate_payload(payload)
        changes = payload.changes()

        def change(state: Dataset) -> Bank:
            bank = _find(state.banks, bank_id, "Bank not found.")
            if "owner_id" in changes:
                _find(state.owners, changes["owner_id"], "Owner not found.")
            for field, value in changes.items():
                setattr(bank, field, value)
            bank.last_updated = utcnow()
            return bank.model_copy()

        return self._mutate(change)

    def delete_bank(self, bank_id: int) -> int:
        def change(state: Dataset) -> int:
            before = len(state.banks)
            _drop_banks(state, {bank_id})
            return before - len(state.banks)

        return self._mutate(change)

    # Accounts

    def create_account(self, payload: AccountPayload) -> Account:
        payload = AccountPayload.validate_payload(payload)

        def change(state: Dataset) -> Account:
            _find(state.banks, payload.bank_id, "Bank not found.")
            account = Account(id=_next_id(state.accounts), **payload.model_dump())
            state.accounts.append(account)
            return account.model_copy()

        return self._mutate(change)

    def update_account(self, account_id: int, payload: AccountUpdatePayload) -> Account:
        payload = AccountUpdatePayload.validate_payload(payload)
        changes = payload.changes()

        def change(state: Dataset) -> Account:
            account = _find(state.accounts, account_id, "Account not found.")
            for field, value in changes.items():
                setattr(account, field, value)
            return account.model_copy()

        return self._mutate(change)

    def delete_account(self, account_id: int) -> int:
        def change(state: Dataset) -> int:
            before = len(state.accounts)
            _drop_accounts(state, {account_id})
            return before - len(state.accounts)

        return self._mutate(change)

    # Balance logs

    def create_log(self, payload: BalanceLogPayload) -> BalanceLog:
        payload = BalanceLogPayload.validate_payload(payload)

        def change(state: Dataset) -> BalanceLog:
            _find(state.accounts, payload.account_id, "Account not found.")
            log = BalanceLog(id=_next_id(state.logs), **payload.model_dump())
            state.logs.append(log)
            _touch_bank(state, payload.account_id)
            return log.model_copy()

        return self._mutate(change)

    def update_log(self, log_id: int, payload: BalanceLogUpdatePayload) -> BalanceLog:
        payload = BalanceLogUpdatePayload.validate_payload(payload)
        changes = payload.changes()

        def change(state: Dataset) -> BalanceLog:
            log = _find(state.logs, log_id, "Log not found.")
            for field, value in changes.items():
                setattr(log, field, value)
            _touch_bank(state, log.account_id)
            return log.model_copy()

        return self._mutate(change)

    def delete_log(self, log_id: int) -> int:
        log = next((log for log in self.state.logs if log.id == log_id), None)
        if log is None:
            return 0

        def change(state: Dataset) -> int:
            state.logs = [entry for entry in state.logs if entry.id != log_id]
            _touch_bank(state, log.account_id)
            return 1

        return self._mutate(change)

    # Assets

    def list_assets(self) -> list[AssetSummary]:
        owner_names = {owner.id: owner.name for owner in self.state.owners}
        return [
            AssetSummary(
                **asset.model_dump(),
                owner_name=owner_names.get(asset.owner_id),
                log_count=sum(1 for log in self.state.asset_logs if log.asset_id == asset.id),
            )
            for asset in sorted(self.state.assets, key=_recent_first, reverse=True)
        ]

    def get_asset(self, asset_id: int) -> AssetDetail:
        asset = _find(self.state.assets, asset_id, "Asset not found.")
        owner_names = {owner.id: owner.name for owner in self.state.owners}
        logs = sorted(
            (log for log in self.state.asset_logs if log.asset_id == asset_id),
            key=_log_order,
            reverse=True,
        )
        return AssetDetail(
            **asset.model_dump(),
            owner_name=owner_names.get(asset.owner_id),
            logs=[log.model_copy() for log in logs],
        )

    def create_asset(self, payload: AssetPayload) -> Asset:
        payload = AssetPayload.validate_payload(payload)

        def change(state: Dataset) -> Asset:
            _find(state.owners, payload.owner_id, "Owner not found.")
            asset = Asset(id=_next_id(state.assets), last_updated=utcnow(), **payload.model_dump())
            state.assets.append(asset)
            return asset.model_copy()

        return self._mutate(change)

    def update_asset(self, asset_id: int, payload: AssetUpdatePayload) -> Asset:
        payload = AssetUpdatePayload.validate_payload(payload)
        changes = payload.changes()

        def change(state: Dataset) -> Asset:
            asset = _find(state.assets, asset_id, "Asset not found.")
            if "owner_id" in changes:
                _find(state.owners, changes["owner_id"], "Owner not found.")
            for field, value in changes.items():
                setattr(asset, field, value)
            _sync_asset(state, asset_id)
            return asset.model_copy()

        return self._mutate(change)

    def delete_asset(self, asset_id: int) -> int:
        def change(state: Dataset) -> int:
            before = len(state.assets)
            _drop_assets(state, {asset_id})
            return before - len(state.assets)

        return self._mutate(change)

    # Asset logs

    def create_asset_log(self, payload: AssetLogPayload) -> AssetLog:
        payload = AssetLogPayload.validate_payload(payload)

        def change(state: Dataset) -> AssetLog:
            _find(state.assets, payload.asset_id, "Asset not found.")
            log = AssetLog(id=_next_id(state.asset_logs), **payload.model_dump())
            state.asset_logs.append(log)
            _sync_asset(state, payload.asset_id)
            return log.model_copy()

        return self._mutate(change)

    def update_asset_log(self, log_id: int, payload: AssetLogUpdatePayload) -> AssetLog:
        payload = AssetLogUpdatePayload.validate_payload(payload)
        changes = payload.changes()

        def change(state: Dataset) -> AssetLog:
            log = _find(state.asset_logs, log_id, "Asset log not found.")
            for field, value in changes.items():
                setattr(log, field, value)
            _sync_asset(state, log.asset_id)
            return log.model_copy()

        return self._mutate(change)

    def delete_asset_log(self, log_id: int) -> int:
        log = next((log for log in self.state.asset_logs if log.id == log_id), None)
        if log is None:
            return 0

        def change(state: Dataset) -> int:
            state.asset_logs = [entry for entry in state.asset_logs if entry.id != log_id]
            _sync_asset(state, log.asset_id)
            return 1

        return self._mutate(change)

    # Bulk operations

    def export_dataset(self) -> Dataset:
        dataset = self.state.model_copy(deep=True)
        dataset.config = self.get_config()
        dataset.fx_rates = self.list_fx_rates()
        return dataset

    def import_dataset(self, dataset: Dataset) -> None:
        check_dataset(dataset)

        def change(state: Dataset) -> None:
            state.owners = [owner.model_copy() for owner in dataset.owners]
            state.banks = [bank.model_copy() for bank in dataset.banks]
            state.accounts = [account.model_copy() for account in dataset.accounts]
            state.logs = [log.model_copy() for log in dataset.logs]
            state.assets = [asset.model_copy() for asset in dataset.assets]
            state.asset_logs = [log.model_copy() for log in dataset.asset_logs]
            if dataset.config is not None:
                state.config = dataset.config.model_copy(deep=True)
            if dataset.fx_rates is not None:
                now = utcnow()
                state.fx_rates = [
                    rate.model_copy(update={"updated_at": rate.updated_at or now})
                    for rate in dataset.fx_rates
                ]

        self._mutate(change)
        logger.info(
            "Imported %d owners, %d banks, %d accounts, %d logs, %d assets",
            len(dataset.owners),
            len(dataset.banks),
            len(dataset.accounts),
            len(dataset.logs),
            len(dataset.assets),
        )

    def reset(self) -> None:
        state = Dataset(owners=[], banks=[], accounts=[], logs=[], fx_rates=[])
        _seed_defaults(state)
        self._commit(state)
        logger.info("Store reset")


def _snapshots(logs, account_id: int) -> list[Snapshot]:
    return [
        Snapshot(amount=log.balance, currency=log.currency, recorded_at=log.recorded_at, id=log.id)
        for log in logs
        if log.account_id == account_id
    ]


def _touch_bank(state: Dataset, account_id: int) -> None:
    account = next((account for account in state.accounts if account.id == account_id), None)
    if account is None:
        return
    for bank in state.banks:
        if bank.id == account.bank_id:
            bank.last_updated = utcnow()


def _sync_asset(state: Dataset, asset_id: int) -> None:
    asset = next((asset for asset in state.assets if asset.id == asset_id), None)
    if asset is None:
        return
    latest = latest_valuation(
        Snapshot(
            amount=log.amount,
            currency=log.currency,
            recorded_at=log.recorded_at,
            id=log.id,
            kind=log.type,
        )
        for log in state.asset_logs
        if log.asset_id == asset_id
    )
    if latest is not None:
        asset.value = latest.amount
        asset.currency = latest.currency
    asset.last_updated = utcnow()


def _drop_banks(state: Dataset, bank_ids: set[int]) -> None:
    state.banks = [bank for bank in state.banks if bank.id not in bank_ids]
    _drop_accounts(state, {account.id for account in state.accounts if account.bank_id in bank_ids})


def _drop_accounts(state: Dataset, account_ids: set[int]) -> None:
    state.accounts = [account for account in state.accounts if account.id not in account_ids]
    state.logs = [log for log in state.logs if log.account_id not in account_ids]


def _drop_assets(state: Dataset, asset_ids: set[int]) -> None:
    state.assets = [asset for asset in state.assets if asset.id not in asset_ids]
    state.asset_logs = [log for log in state.asset_logs if log.asset_id not in asset_ids]


def _seed_defaults(state: Dataset) -> None:
    if not state.owners:
        logger.info("Seeding default owner")
        state.owners.append(Owner(id=1, name=DEFAULT_OWNER_NAME))
    config = state.config or ConfigOptions()
    if not config.countries and not config.currencies:
        logger.info("Seeding default config options")
        config = ConfigOptions(countries=list(DEFAULT_COUNTRIES), currencies=list(DEFAULT_CURRENCIES))
    state.config = config
    if state.fx_rates is None:
        state.fx_rates = []


def _seed_demo_data(state: Dataset) -> None:
    if state.banks or not state.owners:
        return
    logger.info("Seeding demo data")
    owner_id = state.owners[0].id
    now = utcnow()
    state.banks.extend(
        [
            Bank(id=1, owner_id=owner_id, name="Chase Main", bank_name="Chase Bank",
                 logo_color="#117aca", country="USA", last_updated=now),
            Bank(id=2, owner_id=owner_id, name="HSBC HK", bank_name="HSBC",
                 logo_color="#db0011", country="Hong Kong", last_updated=now),
        ]
    )
    state.accounts.extend(
        [
            Account(id=1, bank_id=1, name="Checking", account_number="**** 1234"),
            Account(id=2, bank_id=1, name="Savings", account_number="**** 5678"),
            Account(id=3, bank_id=2, name="HKD Savings", account_number="**** 9999"),
        ]
    )
    demo_logs = [
        (1, "5000", "USD", "Initial deposit", now - timedelta(days=60)),
        (1, "7500", "USD", "Salary", now - timedelta(days=30)),
        (1, "8200", "USD", "Current balance", now),
        (2, "10000", "USD", "Initial savings", now - timedelta(days=30)),
        (2, "10050", "USD", "Interest", now),
        (3, "50000", "HKD", "Savings", now),
    ]
    state.logs.extend(
        BalanceLog(
            id=index,
            account_id=account_id,
            balance=Decimal(balance),
            currency=currency,
            comment=comment,
            recorded_at=recorded_at,
        )
        for index, (account_id, balance, currency, comment, recorded_at) in enumerate(demo_logs, start=1)
    )
