from contextlib import contextmanager
import logging
import os

from fastapi import Body, Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from networth.currency_conversion import (
    RateProviderUnavailable,
    fetch_latest_rates,
    normalize_currency,
)
from networth.dates import normalize_window
from networth.errors import ConflictError, NotFoundError
from networth.json_store import JsonFileBackend, JsonStore
from networth.reporting import (
    asset_items,
    bank_items,
    build_rate_table,
    build_summary,
    display_totals,
    portfolio_items,
    trend_response,
)
from networth.schemas import (
    Account,
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
    FXRateEntry,
    FXRateRecord,
    FXRatesPayload,
    Owner,
    OwnerPayload,
)
from networth.sql_store import SqlStore, create_store_engine

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def get_configured_currency(name: str) -> str:
    raw = os.getenv(name, "USD")
    try:
        return normalize_currency(raw)
    except ValueError:
        logger.warning("Invalid %s %r, using USD", name, raw)
        return "USD"


SYSTEM_DEFAULT_CURRENCY = get_configured_currency("DEFAULT_CURRENCY")
FX_BASE_CURRENCY = get_configured_currency("FX_BASE_CURRENCY")
SEED_DEMO_DATA = os.getenv("SEED_DEMO_DATA", "").strip().lower() in ("1", "true", "yes")


def create_store_from_env():
    backend = os.getenv("STORAGE_BACKEND", "sql").strip().lower()
    if backend == "json":
        return JsonStore(JsonFileBackend(os.getenv("JSON_STORE_PATH", "./networth.json")))
    if backend != "sql":
        raise RuntimeError(f"Unknown STORAGE_BACKEND: {backend}")
    return SqlStore(create_store_engine(os.getenv("DATABASE_URL", "sqlite:///./networth.db")))


app = FastAPI(title="Net Worth Tracker")

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app_store = create_store_from_env()


def get_store():
    return app_store


@app.on_event("startup")
def init_store() -> None:
    app_store.initialize(seed_demo=SEED_DEMO_DATA)
    logger.info("Store ready: %s", app_store.describe())


@contextmanager
def store_errors():
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RateProviderUnavailable as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


def resolve_display_currency(value: str | None) -> str:
    if not value:
        return SYSTEM_DEFAULT_CURRENCY
    try:
        return normalize_currency(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def current_rate_table(store):
    return build_rate_table(store.list_fx_rates(), FX_BASE_CURRENCY)


@app.get("/api/health")
def health(store=Depends(get_store)) -> dict:
    return {"status": "ok", "database": store.describe()}


# Config options


@app.get("/api/config", response_model=ConfigOptions)
def get_config(store=Depends(get_store)) -> ConfigOptions:
    return store.get_config()


@app.post("/api/config", response_model=ConfigOptions)
def add_config_option(payload: ConfigOptionPayload, store=Depends(get_store)) -> ConfigOptions:
    with store_errors():
        store.add_config_option(payload)
    return store.get_config()


@app.delete("/api/config", response_model=ConfigOptions)
def delete_config_option(payload: ConfigOptionPayload, store=Depends(get_store)) -> ConfigOptions:
    with store_errors():
        store.delete_config_option(payload)
    return store.get_config()


# FX rates


@app.get("/api/fx-rates", response_model=list[FXRateRecord])
def list_fx_rates(store=Depends(get_store)) -> list[FXRateRecord]:
    return store.list_fx_rates()


@app.post("/api/fx-rates")
def upsert_fx_rates(
    payload: FXRatesPayload | list[FXRateEntry] = Body(...), store=Depends(get_store)
) -> dict:
    if isinstance(payload, list):
        payload = FXRatesPayload(rates=payload)
    with store_errors():
        updated = store.upsert_fx_rates(payload)
    return {"status": "ok", "updated": updated}


@app.post("/api/fx-rates/refresh")
def refresh_fx_rates(store=Depends(get_store)) -> dict:
    with store_errors():
        try:
            rates = fetch_latest_rates(FX_BASE_CURRENCY)
        except RateProviderUnavailable:
            logger.warning("FX refresh failed for base %s", FX_BASE_CURRENCY)
            raise
        payload = FXRatesPayload(
            rates=[
                FXRateEntry(base=rate.base_currency, target=rate.target_currency, rate=rate.rate)
                for rate in rates
            ]
        )
        updated = store.upsert_fx_rates(payload)
    logger.info("Refreshed %d FX rates for base %s", updated, FX_BASE_CURRENCY)
    return {"status": "ok", "updated": updated, "base_currency": FX_BASE_CURRENCY}


# Owners


@app.get("/api/owners", response_model=list[Owner])
def list_owners(store=Depends(get_store)) -> list[Owner]:
    return store.list_owners()


@app.post("/api/owners", response_model=Owner)
def create_owner(payload: OwnerPayload, store=Depends(get_store)) -> Owner:
    with store_errors():
        return store.create_owner(payload)


@app.get("/api/owners/{owner_id}", response_model=Owner)
def get_owner(owner_id: int, store=Depends(get_store)) -> Owner:
    with store_errors():
        return store.get_owner(owner_id)


@app.put("/api/owners/{owner_id}", response_model=Owner)
def update_owner(owner_id: int, payload: OwnerPayload, store=Depends(get_store)) -> Owner:
    with store_errors():
        return store.update_owner(owner_id, payload)


@app.delete("/api/owners/{owner_id}")
def delete_owner(owner_id: int, store=Depends(get_store)) -> dict:
    store.delete_owner(owner_id)
    return {"status": "deleted"}


# Banks


@app.get("/api/accounts", response_model=list[BankSummary])
def list_banks(
    display_currency: str | None = Query(None), store=Depends(get_store)
) -> list[BankSummary]:
    summaries = store.list_banks()
    if not display_currency:
        return summaries
    currency = resolve_display_currency(display_currency)
    totals = display_totals(store.export_dataset(), currency, current_rate_table(store))
    for summary in summaries:
        summary.display_total = totals.get(summary.id)
        summary.display_currency = currency
    return summaries


@app.get("/api/accounts/{bank_id}", response_model=BankDetail)
def get_bank(bank_id: int, store=Depends(get_store)) -> BankDetail:
    with store_errors():
        return store.get_bank(bank_id)


@app.get("/api/accounts/{bank_id}/trend")
def get_bank_trend(
    bank_id: int,
    window: str = Query("ALL"),
    display_currency: str | None = Query(None),
    store=Depends(get_store),
) -> dict:
    currency = resolve_display_currency(display_currency)
    with store_errors():
        normalized = normalize_window(window)
        items = bank_items(store.get_bank(bank_id))
    return trend_response(items, normalized, currency, current_rate_table(store))


@app.post("/api/accounts", response_model=Bank)
def create_bank(payload: BankPayload, store=Depends(get_store)) -> Bank:
    with store_errors():
        return store.create_bank(payload)


@app.put("/api/accounts/{bank_id}", response_model=Bank)
def update_bank(bank_id: int, payload: BankUpdatePayload, store=Depends(get_store)) -> Bank:
    with store_errors():
        return store.update_bank(bank_id, payload)


@app.delete("/api/accounts/{bank_id}")
def delete_bank(bank_id: int, store=Depends(get_store)) -> dict:
    store.delete_bank(bank_id)
    return {"status": "deleted"}


# Sub-accounts


@app.post("/api/sub-accounts", response_model=Account)
def create_account(payload: AccountPayload, store=Depends(get_store)) -> Account:
    with store_errors():
        return store.create_account(payload)


@app.put("/api/sub-accounts/{account_id}", response_model=Account)
def update_account(
    account_id: int, payload: AccountUpdatePayload, store=Depends(get_store)
) -> Account:
    with store_errors():
        return store.update_account(account_id, payload)


@app.delete("/api/sub-accounts/{account_id}")
def delete_account(account_id: int, store=Depends(get_store)) -> dict:
    store.delete_account(account_id)
    return {"status": "deleted"}


# Balance logs


@app.post("/api/logs", response_model=BalanceLog)
def create_log(payload: BalanceLogPayload, store=Depends(get_store)) -> BalanceLog:
    with store_errors():
        return store.create_log(payload)


@app.put("/api/logs/{log_id}", response_model=BalanceLog)
def update_log(log_id: int, payload: BalanceLogUpdatePayload, store=Depends(get_store)) -> BalanceLog:
    with store_errors():
        return store.update_log(log_id, payload)


@app.delete("/api/logs/{log_id}")
def delete_log(log_id: int, store=Depends(get_store)) -> dict:
    store.delete_log(log_id)
    return {"status": "deleted"}


# Assets


@app.get("/api/assets", response_model=list[AssetSummary])
def list_assets(store=Depends(get_store)) -> list[AssetSummary]:
    return store.list_assets()


@app.get("/api/assets/{asset_id}", response_model=AssetDetail)
def get_asset(asset_id: int, store=Depends(get_store)) -> AssetDetail:
    with store_errors():
        return store.get_asset(asset_id)


@app.get("/api/assets/{asset_id}/trend")
def get_asset_trend(
    asset_id: int,
    window: str = Query("ALL"),
    display_currency: str | None = Query(None),
    store=Depends(get_store),
) -> dict:
    currency = resolve_display_currency(display_currency)
    with store_errors():
        normalized = normalize_window(window)
        items = asset_items(store.get_asset(asset_id))
    return trend_response(items, normalized, currency, current_rate_table(store))


@app.post("/api/assets", response_model=Asset)
def create_asset(payload: AssetPayload, store=Depends(get_store)) -> Asset:
    with store_errors():
        return store.create_asset(payload)


@app.put("/api/assets/{asset_id}", response_model=Asset)
def update_asset(asset_id: int, payload: AssetUpdatePayload, store=Depends(get_store)) -> Asset:
    with store_errors():
        return store.update_asset(asset_id, payload)


@app.delete("/api/assets/{asset_id}")
def delete_asset(asset_id: int, store=Depends(get_store)) -> dict:
    store.delete_asset(asset_id)
    return {"status": "deleted"}


@app.post("/api/asset-logs", response_model=AssetLog)
def create_asset_log(payload: AssetLogPayload, store=Depends(get_store)) -> AssetLog:
    with store_errors():
        return store.create_asset_log(payload)


@app.put("/api/asset-logs/{log_id}", response_model=AssetLog)
def update_asset_log(
    log_id: int, payload: AssetLogUpdatePayload, store=Depends(get_store)
) -> AssetLog:
    with store_errors():
        return store.update_asset_log(log_id, payload)


@app.delete("/api/asset-logs/{log_id}")
def delete_asset_log(log_id: int, store=Depends(get_store)) -> dict:
    store.delete_asset_log(log_id)
    return {"status": "deleted"}


# Dashboard


@app.get("/api/summary")
def get_summary(
    display_currency: str | None = Query(None),
    owner_id: int | None = Query(None),
    store=Depends(get_store),
) -> dict:
    currency = resolve_display_currency(display_currency)
    return build_summary(store.export_dataset(), currency, current_rate_table(store), owner_id)


@app.get("/api/trends")
def get_trends(
    window: str = Query("ALL"),
    display_currency: str | None = Query(None),
    owner_id: int | None = Query(None),
    kind: str = Query("all"),
    store=Depends(get_store),
) -> dict:
    currency = resolve_display_currency(display_currency)
    with store_errors():
        normalized = normalize_window(window)
        items = portfolio_items(store.export_dataset(), kind, owner_id)
    return trend_response(items, normalized, currency, current_rate_table(store))


# Bulk operations


@app.get("/api/export", response_model=Dataset)
def export_dataset(store=Depends(get_store)) -> Dataset:
    return store.export_dataset()


@app.post("/api/import")
def import_dataset(payload: Dataset, store=Depends(get_store)) -> dict:
    with store_errors():
        store.import_dataset(payload)
    return {"status": "imported"}


@app.post("/api/reset")
def reset_store(store=Depends(get_store)) -> dict:
    store.reset()
    return {"status": "reset"}


def run() -> None:
    uvicorn.run(
        "networth.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3000")),
    )
