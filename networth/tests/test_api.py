import io
import json
import unittest
from decimal import Decimal
from unittest import mock

from fastapi.testclient import TestClient

from networth.json_store import JsonStore, MemoryBackend
from networth.main import app, get_store
from networth.sql_store import SqlStore, create_store_engine


class ApiTests(unittest.TestCase):
    def make_store(self):
        store = SqlStore(create_store_engine("sqlite://"))
        store.initialize()
        return store

    def setUp(self) -> None:
        self.store = self.make_store()
        app.dependency_overrides[get_store] = lambda: self.store
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def create_bank(self, name: str = "Chase Main") -> dict:
        owner_id = self.client.get("/api/owners").json()[0]["id"]
        response = self.client.post("/api/accounts", json={"owner_id": owner_id, "name": name})
        self.assertEqual(response.status_code, 200)
        return response.json()

    def account_id(self, bank_id: int) -> int:
        return self.client.get(f"/api/accounts/{bank_id}").json()["accounts"][0]["id"]

    def test_health(self) -> None:
        response = self.client.get("/api/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")

    def test_config_endpoints(self) -> None:
        response = self.client.post("/api/config", json={"type": "currency", "value": "eur"})
        self.assertEqual(response.status_code, 200)
        self.assertIn("EUR", response.json()["currencies"])

        duplicate = self.client.post("/api/config", json={"type": "currency", "value": "EUR"})
        self.assertEqual(duplicate.status_code, 409)

        removed = self.client.request("DELETE", "/api/config", json={"type": "currency", "value": "EUR"})
        self.assertEqual(removed.status_code, 200)
        self.assertNotIn("EUR", self.client.get("/api/config").json()["currencies"])

        invalid = self.client.post("/api/config", json={"type": "planet", "value": "Mars"})
        self.assertEqual(invalid.status_code, 400)

    def test_owner_crud(self) -> None:
        created = self.client.post("/api/owners", json={"name": "Partner"}).json()
        self.assertEqual(self.client.post("/api/owners", json={"name": "Partner"}).status_code, 409)

        renamed = self.client.put(f"/api/owners/{created['id']}", json={"name": "Alex"})
        self.assertEqual(renamed.json()["name"], "Alex")
        self.assertEqual(self.client.get("/api/owners/999").status_code, 404)

        deleted = self.client.delete(f"/api/owners/{created['id']}")
        self.assertEqual(deleted.json(), {"status": "deleted"})
        self.assertEqual([owner["name"] for owner in self.client.get("/api/owners").json()], ["Me"])

    def test_bank_lifecycle(self) -> None:
        bank = self.create_bank()
        account_id = self.account_id(bank["id"])
        self.client.post("/api/logs", json={"account_id": account_id, "balance": 5000, "recorded_at": "2024-01-01"})
        log = self.client.post(
            "/api/logs", json={"account_id": account_id, "balance": "8200", "recorded_at": "2024-02-01T00:00:00Z"}
        ).json()
        self.assertEqual(log["currency"], "USD")

        listed = self.client.get("/api/accounts").json()
        self.assertEqual(Decimal(listed[0]["total_balance"]), Decimal("8200"))
        self.assertEqual(listed[0]["account_count"], 1)

        updated = self.client.put(f"/api/accounts/{bank['id']}", json={"bank_name": "Chase Bank"}).json()
        self.assertEqual((updated["name"], updated["bank_name"]), ("Chase Main", "Chase Bank"))

        sub = self.client.post("/api/sub-accounts", json={"bank_id": bank["id"], "name": "Savings"}).json()
        self.assertEqual(sub["type"], "Bank")
        renamed = self.client.put(f"/api/sub-accounts/{sub['id']}", json={"name": "Rainy Day"}).json()
        self.assertEqual(renamed["name"], "Rainy Day")

        updated_log = self.client.put(f"/api/logs/{log['id']}", json={"balance": 9000}).json()
        self.assertEqual(Decimal(updated_log["balance"]), Decimal("9000"))
        self.assertEqual(self.client.delete(f"/api/logs/{log['id']}").json(), {"status": "deleted"})
        self.assertEqual(self.client.delete(f"/api/sub-accounts/{sub['id']}").json(), {"status": "deleted"})
        self.assertEqual(self.client.delete(f"/api/accounts/{bank['id']}").json(), {"status": "deleted"})
        self.assertEqual(self.client.get("/api/accounts").json(), [])
        self.assertEqual(self.client.get(f"/api/accounts/{bank['id']}").status_code, 404)

    def test_deleting_missing_rows_is_not_an_error(self) -> None:
        for path in ("/api/accounts/999", "/api/sub-accounts/999", "/api/logs/999", "/api/assets/999"):
            response = self.client.delete(path)
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.json(), {"status": "deleted"})

    def test_validation_errors(self) -> None:
        self.assertEqual(self.client.post("/api/owners", json={"name": "  "}).status_code, 400)
        self.assertEqual(
            self.client.post("/api/logs", json={"account_id": 999, "balance": 1, "recorded_at": "2024-01-01"}).status_code,
            404,
        )
        self.assertEqual(self.client.get("/api/trends?window=2W").status_code, 400)
        self.assertEqual(self.client.get("/api/summary?display_currency=dollars").status_code, 400)

    def test_display_total_uses_fx_rates(self) -> None:
        bank = self.create_bank("HSBC HK")
        self.client.post(
            "/api/logs",
            json={"account_id": self.account_id(bank["id"]), "balance": 780, "currency": "HKD", "recorded_at": "2024-01-01"},
        )
        self.client.post("/api/fx-rates", json={"rates": [{"base": "USD", "target": "HKD", "rate": 7.8}]})

        listed = self.client.get("/api/accounts?display_currency=usd").json()

        self.assertEqual(Decimal(listed[0]["display_total"]), Decimal("100"))
        self.assertEqual(listed[0]["display_currency"], "USD")

    def test_fx_rates_accept_plain_list(self) -> None:
        response = self.client.post("/api/fx-rates", json=[{"base_currency": "USD", "target_currency": "CNY", "rate": 7.2}])

        self.assertEqual(response.json(), {"status": "ok", "updated": 1})
        self.assertEqual(self.client.get("/api/fx-rates").json()[0]["target_currency"], "CNY")

    def test_refresh_fx_rates(self) -> None:
        body = json.dumps({"base": "USD", "rates": {"HKD": 7.8, "EUR": 0.9}}).encode()
        with mock.patch("networth.currency_conversion.urlopen", return_value=io.BytesIO(body)):
            response = self.client.post("/api/fx-rates/refresh")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["updated"], 3)
        targets = {rate["target_currency"] for rate in self.client.get("/api/fx-rates").json()}
        self.assertEqual(targets, {"EUR", "HKD", "USD"})

    def test_refresh_fx_rates_failure(self) -> None:
        with mock.patch("networth.currency_conversion.urlopen", side_effect=TimeoutError()):
            response = self.client.post("/api/fx-rates/refresh")

        self.assertEqual(response.status_code, 502)

    def test_asset_endpoints(self) -> None:
        owner_id = self.client.get("/api/owners").json()[0]["id"]
        asset = self.client.post(
            "/api/assets", json={"owner_id": owner_id, "name": "Flat", "asset_type": "Real Estate"}
        ).json()
        log = self.client.post(
            "/api/asset-logs",
            json={"asset_id": asset["id"], "amount": 300000, "recorded_at": "2024-01-01"},
        ).json()
        self.assertEqual(log["type"], "Valuation")

        detail = self.client.get(f"/api/assets/{asset['id']}").json()
        self.assertEqual(Decimal(detail["value"]), Decimal("300000"))
        self.assertEqual(len(detail["logs"]), 1)

        self.client.put(f"/api/asset-logs/{log['id']}", json={"amount": 310000})
        self.assertEqual(Decimal(self.client.get("/api/assets").json()[0]["value"]), Decimal("310000"))
        self.assertEqual(self.client.put(f"/api/assets/{asset['id']}", json={"notes": "2 bed"}).json()["notes"], "2 bed")

        bad = self.client.post(
            "/api/asset-logs", json={"asset_id": asset["id"], "type": "Rent", "amount": 1, "recorded_at": "2024-01-01"}
        )
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(self.client.delete(f"/api/asset-logs/{log['id']}").json(), {"status": "deleted"})
        self.assertEqual(self.client.delete(f"/api/assets/{asset['id']}").json(), {"status": "deleted"})

    def test_summary(self) -> None:
        bank = self.create_bank()
        self.client.post(
            "/api/logs", json={"account_id": self.account_id(bank["id"]), "balance": 8200, "recorded_at": "2024-02-01"}
        )
        owner_id = self.client.get("/api/owners").json()[0]["id"]
        self.client.post(
            "/api/assets",
            json={"owner_id": owner_id, "name": "Car", "asset_type": "Vehicle", "value": 500, "currency": "EUR"},
        )

        summary = self.client.get("/api/summary?display_currency=USD").json()

        self.assertEqual(Decimal(summary["bank_total"]), Decimal("8200"))
        self.assertEqual(Decimal(summary["net_worth"]), Decimal("8700"))
        self.assertEqual(summary["missing_rates"], ["EUR"])
        self.assertEqual(summary["owners"][0]["name"], "Me")
        self.assertEqual(summary["owners"][0]["asset_count"], 1)

    def test_trends_are_flattened(self) -> None:
        bank = self.create_bank()
        account_id = self.account_id(bank["id"])
        self.client.post("/api/logs", json={"account_id": account_id, "balance": 100, "recorded_at": "2024-01-01"})
        self.client.post("/api/logs", json={"account_id": account_id, "balance": 200, "recorded_at": "2024-01-10"})

        trends = self.client.get("/api/trends?window=all").json()

        self.assertEqual(trends["window"], "ALL")
        self.assertEqual(trends["series"], ["Chase Main"])
        first = trends["points"][0]
        self.assertEqual(sorted(first), ["Chase Main", "Sum", "date"])
        self.assertEqual(first["date"], "2024-01-01")
        self.assertEqual(Decimal(first["Chase Main"]), Decimal("100"))
        self.assertEqual(Decimal(trends["points"][1]["Sum"]), Decimal("200"))
        self.assertEqual(Decimal(trends["points"][-1]["Chase Main"]), Decimal("200"))

        per_account = self.client.get(f"/api/accounts/{bank['id']}/trend").json()
        self.assertEqual(per_account["series"], ["Default Account"])
        self.assertEqual(self.client.get("/api/trends?kind=assets").json()["points"], [])
        self.assertEqual(self.client.get("/api/assets/999/trend").status_code, 404)

    def test_export_import_reset(self) -> None:
        bank = self.create_bank()
        self.client.post(
            "/api/logs", json={"account_id": self.account_id(bank["id"]), "balance": 8200, "recorded_at": "2024-02-01"}
        )
        exported = self.client.get("/api/export").json()

        self.assertEqual(self.client.post("/api/reset").json(), {"status": "reset"})
        self.assertEqual(self.client.get("/api/accounts").json(), [])

        self.assertEqual(self.client.post("/api/import", json=exported).json(), {"status": "imported"})
        again = self.client.get("/api/export").json()
        self.assertEqual(again["banks"], exported["banks"])
        self.assertEqual(again["logs"], exported["logs"])

    def test_import_rejects_dangling_reference(self) -> None:
        payload = {
            "owners": [{"id": 1, "name": "Me"}],
            "banks": [{"id": 1, "owner_id": 2, "name": "Orphan"}],
            "accounts": [],
            "logs": [],
        }

        response = self.client.post("/api/import", json=payload)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.client.get("/api/owners").json()[0]["name"], "Me")

    def test_import_rejects_bad_currency(self) -> None:
        payload = {
            "owners": [{"id": 1, "name": "Me"}],
            "banks": [{"id": 1, "owner_id": 1, "name": "Chase"}],
            "accounts": [{"id": 1, "bank_id": 1, "name": "Checking"}],
            "logs": [
                {"id": 1, "account_id": 1, "balance": "100", "currency": "US$", "recorded_at": "2024-01-01"}
            ],
        }

        response = self.client.post("/api/import", json=payload)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.client.get("/api/accounts").json(), [])
        self.assertEqual(self.client.get("/api/summary").status_code, 200)
        self.assertEqual(self.client.get("/api/trends").status_code, 200)


class JsonBackedApiTests(ApiTests):
    def make_store(self):
        store = JsonStore(MemoryBackend())
        store.initialize()
        return store


if __name__ == "__main__":
    unittest.main()
