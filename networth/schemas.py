from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator

from networth.currency_conversion import normalize_currency
from networth.dates import parse_timestamp
from networth.errors import ImportFormatError

DEFAULT_BANK_COLOR = "#3b82f6"
DEFAULT_ASSET_COLOR = "#10b981"
DEFAULT_COUNTRY = "USA"
DEFAULT_ACCOUNT_TYPE = "Bank"
DEFAULT_LOG_CURRENCY = "USD"
DEFAULT_ACCOUNT_NAME = "Default Account"
DEFAULT_OWNER_NAME = "Me"
DEFAULT_COUNTRIES = ["USA", "China", "Hong Kong"]
DEFAULT_CURRENCIES = ["USD", "CNY", "HKD"]


class ConfigOptionType:
    values = {"country", "currency"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Option type must be 'country' or 'currency'.")
        return normalized


class AssetLogType:
    values = ("Valuation", "Dividend", "Maintenance", "Other")

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        for allowed in cls.values:
            if allowed.lower() == normalized:
                return allowed
        raise ValueError("Asset log type must be Valuation, Dividend, Maintenance or Other.")


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _required(value: str | None, message: str) -> str:
    cleaned = _clean(value)
    if not cleaned:
        raise ValueError(message)
    return cleaned


def _parse_optional_timestamp(value: Any) -> Any:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, (date, str)):
        return parse_timestamp(value)
    return value


class PatchModel(BaseModel):
    """Base for partial updates: only fields present in the request change."""

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


# Payloads


class ConfigOptionPayload(BaseModel):
    type: str
    value: str

    @classmethod
    def validate_payload(cls, payload: "ConfigOptionPayload") -> "ConfigOptionPayload":
        payload.type = ConfigOptionType.validate(payload.type)
        payload.value = _required(payload.value, "Option value required.")
        if payload.type == "currency":
            payload.value = normalize_currency(payload.value)
        return payload


class FXRateEntry(BaseModel):
    base: str = Field(validation_alias=AliasChoices("base", "base_currency"))
    target: str = Field(validation_alias=AliasChoices("target", "target_currency"))
    rate: Decimal


class FXRatesPayload(BaseModel):
    rates: list[FXRateEntry]

    @classmethod
    def validate_payload(cls, payload: "FXRatesPayload") -> "FXRatesPayload":
        for entry in payload.rates:
            entry.base = normalize_currency(entry.base)
            entry.target = normalize_currency(entry.target)
            if entry.rate <= 0:
                raise ValueError("FX rate must be greater than zero.")
        return payload


class OwnerPayload(BaseModel):
    name: str

    @classmethod
    def validate_payload(cls, payload: "OwnerPayload") -> "OwnerPayload":
        payload.name = _required(payload.name, "Owner name required.")
        return payload


class BankPayload(BaseModel):
    owner_id: int
    name: str
    bank_name: str | None = None
    institution_type: str | None = None
    logo_color: str | None = None
    country: str | None = None

    @classmethod
    def validate_payload(cls, payload: "BankPayload") -> "BankPayload":
        payload.name = _required(payload.name, "Bank name required.")
        payload.bank_name = _clean(payload.bank_name)
        payload.institution_type = _clean(payload.institution_type)
        payload.logo_color = _clean(payload.logo_color) or DEFAULT_BANK_COLOR
        payload.country = _clean(payload.country) or DEFAULT_COUNTRY
        return payload


class BankUpdatePayload(PatchModel):
    owner_id: int | None = None
    name: str | None = None
    bank_name: str | None = None
    institution_type: str | None = None
    logo_color: str | None = None
    country: str | None = None

    @classmethod
    def validate_payload(cls, payload: "BankUpdatePayload") -> "BankUpdatePayload":
        fields = payload.model_fields_set
        if "owner_id" in fields and payload.owner_id is None:
            raise ValueError("Owner required.")
        if "name" in fields:
            payload.name = _required(payload.name, "Bank name required.")
        if "bank_name" in fields:
            payload.bank_name = _clean(payload.bank_name)
        if "institution_type" in fields:
            payload.institution_type = _clean(payload.institution_type)
        if "logo_color" in fields:
            payload.logo_color = _clean(payload.logo_color) or DEFAULT_BANK_COLOR
        if "country" in fields:
            payload.country = _clean(payload.country) or DEFAULT_COUNTRY
        return payload


class AccountPayload(BaseModel):
    bank_id: int
    name: str
    type: str | None = None
    account_number: str | None = None

    @classmethod
    def validate_payload(cls, payload: "AccountPayload") -> "AccountPayload":
        payload.name = _required(payload.name, "Account name required.")
        payload.type = _clean(payload.type) or DEFAULT_ACCOUNT_TYPE
        payload.account_number = _clean(payload.account_number)
        return payload


class AccountUpdatePayload(PatchModel):
    name: str | None = None
    type: str | None = None
    account_number: str | None = None

    @classmethod
    def validate_payload(cls, payload: "AccountUpdatePayload") -> "AccountUpdatePayload":
        fields = payload.model_fields_set
        if "name" in fields:
            payload.name = _required(payload.name, "Account name required.")
        if "type" in fields:
            payload.type = _clean(payload.type) or DEFAULT_ACCOUNT_TYPE
        if "account_number" in fields:
            payload.account_number = _clean(payload.account_number)
        return payload


class BalanceLogPayload(BaseModel):
    account_id: int
    balance: Decimal
    currency: str | None = None
    comment: str | None = None
    recorded_at: datetime

    @field_validator("recorded_at", mode="before")
    @classmethod
    def parse_recorded_at(cls, value: Any) -> Any:
        return _parse_optional_timestamp(value)

    @classmethod
    def validate_payload(cls, payload: "BalanceLogPayload") -> "BalanceLogPayload":
        payload.currency = normalize_currency(payload.currency or DEFAULT_LOG_CURRENCY)
        payload.comment = _clean(payload.comment)
        return payload


class BalanceLogUpdatePayload(PatchModel):
    balance: Decimal | None = None
    currency: str | None = None
    comment: str | None = None
    recorded_at: datetime | None = None

    @field_validator("recorded_at", mode="before")
    @classmethod
    def parse_recorded_at(cls, value: Any) -> Any:
        return _parse_optional_timestamp(value)

    @classmethod
    def validate_payload(
        cls, payload: "BalanceLogUpdatePayload"
    ) -> "BalanceLogUpdatePayload":
        fields = payload.model_fields_set
        if "balance" in fields and payload.balance is None:
            raise ValueError("Balance required.")
        if "recorded_at" in fields and payload.recorded_at is None:
            raise ValueError("Recorded date required.")
        if "currency" in fields:
            payload.currency = normalize_currency(payload.currency or DEFAULT_LOG_CURRENCY)
        if "comment" in fields:
            payload.comment = _clean(payload.comment)
        return payload


class AssetPayload(BaseModel):
    owner_id: int
    name: str
    asset_type: str
    value: Decimal = Decimal("0")
    currency: str | None = None
    purchase_price: Decimal | None = None
    purchase_date: date | None = None
    country: str | None = None
    notes: str | None = None
    logo_color: str | None = None

    @classmethod
    def validate_payload(cls, payload: "AssetPayload") -> "AssetPayload":
        payload.name = _required(payload.name, "Asset name required.")
        payload.asset_type = _required(payload.asset_type, "Asset type required.")
        payload.currency = normalize_currency(payload.currency or DEFAULT_LOG_CURRENCY)
        payload.country = _clean(payload.country) or DEFAULT_COUNTRY
        payload.notes = _clean(payload.notes)
        payload.logo_color = _clean(payload.logo_color) or DEFAULT_ASSET_COLOR
        return payload


class AssetUpdatePayload(PatchModel):
    owner_id: int | None = None
    name: str | None = None
    asset_type: str | None = None
    value: Decimal | None = None
    currency: str | None = None
    purchase_price: Decimal | None = None
    purchase_date: date | None = None
    country: str | None = None
    notes: str | None = None
    logo_color: str | None = None

    @classmethod
    def validate_payload(cls, payload: "AssetUpdatePayload") -> "AssetUpdatePayload":
        fields = payload.model_fields_set
        if "owner_id" in fields and payload.owner_id is None:
            raise ValueError("Owner required.")
        if "value" in fields and payload.value is None:
            raise ValueError("Asset value required.")
        if "name" in fields:
            payload.name = _required(payload.name, "Asset name required.")
        if "asset_type" in fields:
            payload.asset_type = _required(payload.asset_type, "Asset type required.")
        if "currency" in fields:
            payload.currency = normalize_currency(payload.currency or DEFAULT_LOG_CURRENCY)
        if "country" in fields:
            payload.country = _clean(payload.country) or DEFAULT_COUNTRY
        if "logo_color" in fields:
            payload.logo_color = _clean(payload.logo_color) or DEFAULT_ASSET_COLOR
        if "notes" in fields:
            payload.notes = _clean(payload.notes)
        return payload


class AssetLogPayload(BaseModel):
    asset_id: int
    type: str = "Valuation"
    amount: Decimal
    currency: str | None = None
    comment: str | None = None
    recorded_at: datetime

    @field_validator("recorded_at", mode="before")
    @classmethod
    def parse_recorded_at(cls, value: Any) -> Any:
        return _parse_optional_timestamp(value)

    @classmethod
    def validate_payload(cls, payload: "AssetLogPayload") -> "AssetLogPayload":
        payload.type = AssetLogType.validate(payload.type)
        payload.currency = normalize_currency(payload.currency or DEFAULT_LOG_CURRENCY)
        payload.comment = _clean(payload.comment)
        return payload


class AssetLogUpdatePayload(PatchModel):
    type: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    comment: str | None = None
    recorded_at: datetime | None = None

    @field_validator("recorded_at", mode="before")
    @classmethod
    def parse_recorded_at(cls, value: Any) -> Any:
        return _parse_optional_timestamp(value)

    @classmethod
    def validate_payload(cls, payload: "AssetLogUpdatePayload") -> "AssetLogUpdatePayload":
        fields = payload.model_fields_set
        if "type" in fields:
            payload.type = AssetLogType.validate(payload.type or "")
        if "amount" in fields and payload.amount is None:
            raise ValueError("Amount required.")
        if "recorded_at" in fields and payload.recorded_at is None:
            raise ValueError("Recorded date required.")
        if "currency" in fields:
            payload.currency = normalize_currency(payload.currency or DEFAULT_LOG_CURRENCY)
        if "comment" in fields:
            payload.comment = _clean(payload.comment)
        return payload


# Records


class Owner(BaseModel):
    id: int
    name: str


class ConfigOptions(BaseModel):
    countries: list[str] = []
    currencies: list[str] = []


class FXRateRecord(BaseModel):
    base_currency: str
    target_currency: str
    rate: Decimal
    updated_at: datetime | None = None


class Bank(BaseModel):
    id: int
    owner_id: int
    name: str
    bank_name: str | None = None
    institution_type: str | None = None
    logo_color: str | None = None
    country: str | None = None
    last_updated: datetime | None = None

    @field_validator("last_updated", mode="before")
    @classmethod
    def parse_last_updated(cls, value: Any) -> Any:
        return _parse_optional_timestamp(value)


class BankSummary(Bank):
    owner_name: str | None = None
    total_balance: Decimal = Decimal("0")
    account_count: int = 0
    display_total: Decimal | None = None
    display_currency: str | None = None


class Account(BaseModel):
    id: int
    bank_id: int
    name: str
    type: str = DEFAULT_ACCOUNT_TYPE
    account_number: str | None = None


class BalanceLog(BaseModel):
    id: int
    account_id: int
    balance: Decimal
    currency: str = DEFAULT_LOG_CURRENCY
    comment: str | None = None
    recorded_at: datetime

    @field_validator("recorded_at", mode="before")
    @classmethod
    def parse_recorded_at(cls, value: Any) -> Any:
        return _parse_optional_timestamp(value)


class AccountDetail(Account):
    logs: list[BalanceLog] = []


class BankDetail(Bank):
    owner_name: str | None = None
    accounts: list[AccountDetail] = []


class Asset(BaseModel):
    id: int
    owner_id: int
    name: str
    asset_type: str
    value: Decimal = Decimal("0")
    currency: str = DEFAULT_LOG_CURRENCY
    purchase_price: Decimal | None = None
    purchase_date: date | None = None
    country: str | None = None
    notes: str | None = None
    logo_color: str | None = None
    last_updated: datetime | None = None

    @field_validator("last_updated", mode="before")
    @classmethod
    def parse_last_updated(cls, value: Any) -> Any:
        return _parse_optional_timestamp(value)


class AssetLog(BaseModel):
    id: int
    asset_id: int
    type: str
    amount: Decimal
    currency: str = DEFAULT_LOG_CURRENCY
    comment: str | None = None
    recorded_at: datetime

    @field_validator("recorded_at", mode="before")
    @classmethod
    def parse_recorded_at(cls, value: Any) -> Any:
        return _parse_optional_timestamp(value)


class AssetSummary(Asset):
    owner_name: str | None = None
    log_count: int = 0


class AssetDetail(Asset):
    owner_name: str | None = None
    logs: list[AssetLog] = []


class Dataset(BaseModel):
    """Full export/import document."""

    owners: list[Owner]
    banks: list[Bank]
    accounts: list[Account]
    logs: list[BalanceLog]
    assets: list[Asset] = []
    asset_logs: list[AssetLog] = []
    config: ConfigOptions | None = None
    fx_rates: list[FXRateRecord] | None = None


def check_dataset(dataset: Dataset) -> None:
    """Reject an import whose rows do not reference each other consistently."""
    owner_ids = _unique_ids("owner", dataset.owners)
    bank_ids = _unique_ids("bank", dataset.banks)
    account_ids = _unique_ids("account", dataset.accounts)
    _unique_ids("log", dataset.logs)
    asset_ids = _unique_ids("asset", dataset.assets)
    _unique_ids("asset log", dataset.asset_logs)

    names = [owner.name for owner in dataset.owners]
    if len(set(names)) != len(names):
        raise ImportFormatError("Duplicate owner name in import.")
    _check_parents("Bank", dataset.banks, "owner_id", owner_ids)
    _check_parents("Account", dataset.accounts, "bank_id", bank_ids)
    _check_parents("Log", dataset.logs, "account_id", account_ids)
    _check_parents("Asset", dataset.assets, "owner_id", owner_ids)
    _check_parents("Asset log", dataset.asset_logs, "asset_id", asset_ids)
    for log in dataset.asset_logs:
        try:
            log.type = AssetLogType.validate(log.type)
        except ValueError as exc:
            raise ImportFormatError(f"Asset log {log.id}: {exc}") from exc
    _check_currencies(dataset)


def _check_currencies(dataset: Dataset) -> None:
    for kind, records in (("Log", dataset.logs), ("Asset", dataset.assets), ("Asset log", dataset.asset_logs)):
        for record in records:
            record.currency = _import_currency(record.currency, f"{kind} {record.id}")
    for rate in dataset.fx_rates or []:
        label = f"FX rate {rate.base_currency}->{rate.target_currency}"
        rate.base_currency = _import_currency(rate.base_currency, label)
        rate.target_currency = _import_currency(rate.target_currency, label)
        if rate.rate <= 0:
            raise ImportFormatError(f"{label}: FX rate must be greater than zero.")
    if dataset.config is not None:
        dataset.config.currencies = [
            _import_currency(value, "Currency option") for value in dataset.config.currencies
        ]


def _import_currency(value: str, label: str) -> str:
    try:
        return normalize_currency(value)
    except ValueError as exc:
        raise ImportFormatError(f"{label}: {exc}") from exc


def _unique_ids(kind: str, records: list[BaseModel]) -> set[int]:
    ids = [record.id for record in records]
    unique = set(ids)
    if len(unique) != len(ids):
        raise ImportFormatError(f"Duplicate {kind} id in import.")
    return unique


def _check_parents(kind: str, records: list[BaseModel], field: str, parent_ids: set[int]) -> None:
    for record in records:
        if getattr(record, field) not in parent_ids:
            raise ImportFormatError(f"{kind} {record.id} references missing {field} {getattr(record, field)}.")
