import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient

from dealerbooks.api import create_app
from dealerbooks.auth import issue_token
from dealerbooks.db import SyncLogEntry
from dealerbooks.errors import UpstreamError
from dealerbooks.storage import DocumentStorage


@pytest.fixture
def app(settings, engine, fortnox):
    return create_app(
        settings, engine=engine, client=fortnox, storage=DocumentStorage(settings.storage_path)
    )


@pytest.fixture
def http(app):
    return TestClient(app)


@pytest.fixture
def auth_headers(session, profile):
    token = issue_token(session, profile.user_id)
    return {"Authorization": f"Bearer {token}"}


class TestHealthAndCors:
    def test_health(self, http):
        resp = http.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}

    def test_cors_preflight(self, http):
        resp = http.options(
            "/inventory/list",
            headers={
                "Origin": "http://localhost:5173",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "authorization, content-type",
            },
        )
        assert resp.status_code == 200
        assert resp.headers["access-control-allow-origin"] == "*"


class TestAuthGate:
    def test_missing_header(self, http):
        resp = http.post("/inventory/list", json={})
        assert resp.status_code == 401
        assert resp.json() == {"success": False, "error": "Missing authorization header"}

    def test_unknown_token(self, http, profile):
        resp = http.post("/inventory/list", json={}, headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401
        assert resp.json()["error"] == "Invalid user token"

    def test_mismatched_user(self, http, auth_headers):
        resp = http.post(
            "/fortnox/correction",
            json={"series": "A", "number": 100, "userId": "someone-else"},
            headers=auth_headers,
        )
        assert resp.status_code == 403


class TestInventoryEndpoints:
    def test_create_and_get(self, http, auth_headers):
        resp = http.post(
            "/inventory/create",
            json={
                "registration_number": "abc123",
                "brand": "Volvo",
                "model": "V70",
                "purchase_date": "2024-04-10",
                "purchase_price": 85000,
                "mileage": 4000,
                "first_registration_date": "2024-02-01",
                "purchase_channel": "Privatperson",
            },
            headers=auth_headers,
        )
        assert resp.status_code == 200
        item = resp.json()["item"]
        assert item["registration_number"] == "ABC123"
        assert item["vat_type"] == "Moms (25%)"

        resp = http.post(
            "/inventory/get", json={"inventoryItemId": item["id"]}, headers=auth_headers
        )
        assert resp.json()["item"]["id"] == item["id"]

    def test_missing_fields_are_400(self, http, auth_headers):
        resp = http.post("/inventory/create", json={"brand": "Volvo"}, headers=auth_headers)
        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert "registration_number" in body["error"]

    def test_unknown_item_is_404(self, http, auth_headers):
        resp = http.post(
            "/inventory/get", json={"inventoryItemId": "nope"}, headers=auth_headers
        )
        assert resp.status_code == 404
        assert resp.json()["error"] == "Inventory item not found"

    def test_sale_flow(self, http, auth_headers, make_item):
        item = make_item()
        resp = http.post(
            "/inventory/sale",
            json={"inventoryItemId": item.id, "sellingPrice": 99000, "sellingDate": "2024-06-01"},
            headers=auth_headers,
        )
        assert resp.status_code == 200
        assert resp.json()["item"]["status"] == "sold"

        resp = http.post(
            "/inventory/status",
            json={"inventoryItemId": item.id, "status": "in_stock"},
            headers=auth_headers,
        )
        assert resp.status_code == 400

    def test_malformed_update_is_400(self, http, auth_headers, make_item):
        item = make_item()
        resp = http.post(
            "/inventory/update",
            json={"inventoryItemId": item.id, "changes": {"purchase_price": "abc"}},
            headers={**auth_headers, "Origin": "http://localhost:5173"},
        )

        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": "purchase_price must be a number"}
        assert resp.headers["access-control-allow-origin"] == "*"

    def test_list(self, http, auth_headers, make_item):
        make_item()
        resp = http.post("/inventory/list", json={"syncStatus": "pending"}, headers=auth_headers)
        assert resp.json()["count"] == 1

    def test_vat_determine(self, http, auth_headers):
        resp = http.post(
            "/vat/determine",
            json={
                "mileage": 5000,
                "firstRegistrationDate": "2024-01-01",
                "purchaseChannel": "Privatperson",
                "purchaseDate": "2024-09-01",
            },
            headers=auth_headers,
        )
        assert resp.json() == {"success": True, "vat_type": "Vinstmarginalbeskattning (VMB)"}


class TestFortnoxEndpoints:
    def test_sync_purchase(self, http, fortnox, auth_headers, make_item, make_integration):
        make_integration()
        item = make_item()
        fortnox.post_voucher.return_value = {"VoucherSeries": "A", "VoucherNumber": 17}

        resp = http.post(
            "/fortnox/sync-purchase", json={"inventoryItemId": item.id}, headers=auth_headers
        )

        assert resp.status_code == 200
        assert resp.json()["verification_number"] == "17"

    def test_sync_upstream_failure_is_502(
        self, http, fortnox, session, auth_headers, make_item, make_integration
    ):
        make_integration()
        item = make_item()
        fortnox.post_voucher.side_effect = UpstreamError(
            "Fortnox error during voucher creation: Kontot finns inte",
            upstream_status=400,
            body="raw",
        )

        resp = http.post(
            "/fortnox/sync-purchase", json={"inventoryItemId": item.id}, headers=auth_headers
        )

        assert resp.status_code == 502
        assert resp.json() == {
            "success": False,
            "error": "Fortnox error during voucher creation: Kontot finns inte",
            "upstream_status": 400,
        }
        assert session.scalars(sa.select(SyncLogEntry)).one().sync_status == "failed"

    def test_no_integration_is_404(self, http, auth_headers, make_item):
        item = make_item()
        resp = http.post(
            "/fortnox/sync-purchase", json={"inventoryItemId": item.id}, headers=auth_headers
        )
        assert resp.status_code == 404

    def test_reconnect_required(self, http, fortnox, auth_headers, make_item, make_integration):
        make_integration(token_expires_at=None)
        item = make_item()
        fortnox.refresh_token.side_effect = UpstreamError("invalid_grant", upstream_status=400)

        resp = http.post(
            "/fortnox/sync-purchase", json={"inventoryItemId": item.id}, headers=auth_headers
        )

        assert resp.status_code == 401
        assert resp.json()["reconnect_required"] is True

    def test_oauth_get_auth_url(self, http, fortnox, auth_headers):
        fortnox.authorization_url.return_value = "https://apps.fortnox.se/oauth-v1/auth?x"

        resp = http.post("/fortnox/oauth", json={"action": "get_auth_url"}, headers=auth_headers)

        body = resp.json()
        assert body["success"] is True
        assert body["auth_url"].startswith("https://apps.fortnox.se")
        assert body["state"]

    def test_oauth_status_and_invalid_action(self, http, auth_headers):
        resp = http.post("/fortnox/oauth", json={"action": "get_status"}, headers=auth_headers)
        assert resp.json() == {"success": True, "connected": False}

        resp = http.post("/fortnox/oauth", json={"action": "hack"}, headers=auth_headers)
        assert resp.status_code == 400

    def test_correction(self, http, fortnox, auth_headers, profile, make_integration):
        make_integration()
        fortnox.get_voucher.return_value = {
            "VoucherRows": [
                {"Account": 1200, "Debit": 1000, "Credit": 0},
                {"Account": 1930, "Debit": 0, "Credit": 1000},
            ]
        }
        fortnox.post_voucher.return_value = {"VoucherSeries": "A", "VoucherNumber": 101}

        resp = http.post(
            "/fortnox/correction",
            json={"series": "A", "number": 100, "userId": profile.user_id},
            headers=auth_headers,
        )

        assert resp.status_code == 200
        assert resp.json()["message"] == "Ändringsverifikat A-101 skapat"

        resp = http.post("/fortnox/corrections", headers=auth_headers)
        assert resp.json()["count"] == 1

    def test_upload_attachment(self, http, fortnox, settings, auth_headers, make_integration):
        make_integration()
        DocumentStorage(settings.storage_path).save("down-payment-docs", "kvitto.pdf", b"%PDF")
        fortnox.upload_attachment.return_value = {"Id": "att-1"}

        resp = http.post(
            "/fortnox/upload-attachment",
            json={"series": "A", "number": "17", "documentPath": "kvitto.pdf"},
            headers=auth_headers,
        )

        assert resp.status_code == 200
        assert resp.json()["attachment"] == {"Id": "att-1"}

    def test_accounts_refresh_on_rejection(self, http, fortnox, auth_headers, make_integration):
        make_integration()
        fortnox.refresh_token.return_value = {"access_token": "access-new", "expires_in": 3600}
        fortnox.list_accounts.side_effect = [
            UpstreamError("unauthorized", upstream_status=401, token_expired=True),
            [{"Number": 1465}],
        ]

        resp = http.post("/fortnox/accounts", headers=auth_headers)

        assert resp.json() == {"success": True, "accounts": [{"Number": 1465}]}
        assert fortnox.list_accounts.call_args.args == ("access-new",)

    def test_refresh_failure_surface(self, http, fortnox, auth_headers, make_integration):
        make_integration()
        fortnox.list_suppliers.side_effect = UpstreamError(
            "unauthorized", upstream_status=401, token_expired=True
        )
        fortnox.refresh_token.side_effect = UpstreamError("invalid_grant", upstream_status=400)

        resp = http.post("/fortnox/suppliers", headers=auth_headers)

        assert resp.status_code == 401
        assert resp.json()["reconnect_required"] is True
