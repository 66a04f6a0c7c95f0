from datetime import UTC, date, datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
import sqlalchemy as sa

from dealerbooks.db import FortnoxErrorLog, FortnoxIntegration, InventoryItem, SyncLogEntry
from dealerbooks.errors import NotFoundError, ReconnectRequired, UpstreamError
from dealerbooks.fortnox.client import FortnoxClient
from dealerbooks.services.sync import VoucherSynchronizer, build_purchase_voucher


@pytest.fixture
def synchronizer(engine, fortnox, tokens):
    return VoucherSynchronizer(engine, fortnox, tokens)


def _log_entries(session):
    return session.scalars(sa.select(SyncLogEntry).order_by(SyncLogEntry.id)).all()


class TestBuildPurchaseVoucher:
    def test_two_balanced_rows(self, make_item):
        item = make_item()
        voucher = build_purchase_voucher(item, 1465, 1910)

        assert voucher["Description"] == "Fordonsinköp - Volvo V70 (ABC123)"
        assert voucher["TransactionDate"] == "2024-03-15"
        assert "VoucherSeries" not in voucher
        debit, credit = voucher["VoucherRows"]
        assert (debit["Account"], debit["Debit"], debit["Credit"]) == (1465, 85000.0, 0)
        assert (credit["Account"], credit["Debit"], credit["Credit"]) == (1910, 0, 85000.0)

    def test_series_and_missing_model(self, make_item):
        item = make_item(model=None)
        voucher = build_purchase_voucher(item, 1465, 1910, series="B")

        assert voucher["VoucherSeries"] == "B"
        assert voucher["Description"] == "Fordonsinköp - Volvo (ABC123)"


class TestSyncPurchase:
    def test_success(self, synchronizer, fortnox, session, profile, make_item, make_integration):
        item = make_item()
        make_integration()
        fortnox.post_voucher.return_value = {"VoucherSeries": "A", "VoucherNumber": 17}

        result = synchronizer.sync_purchase(profile.user_id, item.id)

        assert result["success"] is True
        assert result["already_synced"] is False
        assert result["verification_number"] == "17"
        fortnox.post_voucher.assert_called_once()
        access_token, voucher = fortnox.post_voucher.call_args.args
        assert access_token == "access-old"
        assert voucher["VoucherRows"][0]["Account"] == 1465

        session.expire_all()
        stored = session.get(InventoryItem, item.id)
        assert stored.fortnox_sync_status == "synced"
        assert stored.fortnox_verification_number == "17"
        assert stored.fortnox_voucher_series == "A"
        assert stored.fortnox_synced_at is not None

        entries = _log_entries(session)
        assert len(entries) == 1
        assert entries[0].sync_status == "success"
        assert entries[0].fortnox_verification_number == "17"
        assert entries[0].sync_data["Description"].startswith("Fordonsinköp")

    def test_already_synced_short_circuits(
        self, synchronizer, fortnox, session, profile, make_item
    ):
        item = make_item(fortnox_sync_status="synced", fortnox_verification_number="5")

        result = synchronizer.sync_purchase(profile.user_id, item.id)

        assert result["already_synced"] is True
        assert result["verification_number"] == "5"
        assert fortnox.mock_calls == []
        assert _log_entries(session) == []

    def test_expired_token_refreshed_before_posting(
        self, synchronizer, fortnox, session, profile, make_item, make_integration
    ):
        item = make_item()
        integration = make_integration(token_expires_at=datetime.now(UTC) - timedelta(hours=1))
        fortnox.refresh_token.return_value = {
            "access_token": "access-new",
            "refresh_token": "refresh-new",
            "expires_in": 3600,
        }
        fortnox.post_voucher.return_value = {"VoucherSeries": "A", "VoucherNumber": 18}

        synchronizer.sync_purchase(profile.user_id, item.id)

        fortnox.refresh_token.assert_called_once_with("refresh-old")
        assert fortnox.post_voucher.call_args.args[0] == "access-new"
        session.expire_all()
        stored = session.get(FortnoxIntegration, integration.id)
        assert stored.access_token == "access-new"
        assert stored.refresh_token == "refresh-new"

    def test_rejected_token_refreshed_and_retried_once(
        self, synchronizer, fortnox, session, profile, make_item, make_integration
    ):
        item = make_item()
        make_integration()
        fortnox.refresh_token.return_value = {"access_token": "access-new", "expires_in": 3600}
        fortnox.post_voucher.side_effect = [
            UpstreamError("unauthorized", upstream_status=401, token_expired=True),
            {"VoucherSeries": "A", "VoucherNumber": 19},
        ]

        result = synchronizer.sync_purchase(profile.user_id, item.id)

        assert result["verification_number"] == "19"
        assert [c.args[0] for c in fortnox.post_voucher.call_args_list] == [
            "access-old",
            "access-new",
        ]
        assert len(_log_entries(session)) == 1

    def test_failed_post_marks_item_failed(
        self, synchronizer, fortnox, session, profile, make_item, make_integration
    ):
        item = make_item()
        make_integration()
        raw = '{"ErrorInformation": {"error": 1, "message": "Kontot 1465 finns inte"}}'
        fortnox.post_voucher.side_effect = UpstreamError(
            "Fortnox error during voucher creation: Kontot 1465 finns inte",
            upstream_status=400,
            body=raw,
        )

        with pytest.raises(UpstreamError):
            synchronizer.sync_purchase(profile.user_id, item.id)

        fortnox.post_voucher.assert_called_once()
        session.expire_all()
        assert session.get(InventoryItem, item.id).fortnox_sync_status == "failed"
        entries = _log_entries(session)
        assert len(entries) == 1
        assert entries[0].sync_status == "failed"
        assert entries[0].error_message == raw

    def test_failed_refresh_during_retry_marks_failed(
        self, synchronizer, fortnox, session, profile, make_item, make_integration
    ):
        item = make_item()
        make_integration()
        fortnox.post_voucher.side_effect = UpstreamError(
            "unauthorized", upstream_status=401, token_expired=True
        )
        fortnox.refresh_token.side_effect = UpstreamError("invalid_grant", upstream_status=400)

        with pytest.raises(ReconnectRequired):
            synchronizer.sync_purchase(profile.user_id, item.id)

        session.expire_all()
        assert session.get(InventoryItem, item.id).fortnox_sync_status == "failed"
        assert [e.sync_status for e in _log_entries(session)] == ["failed"]

    def test_unreadable_success_body_marks_failed(
        self, engine, tokens, session, profile, make_item, make_integration
    ):
        item = make_item()
        make_integration()
        client = FortnoxClient("cid", "secret", base_url="https://api.fortnox.test")
        resp = MagicMock()
        resp.status_code = 201
        resp.text = "<html>Service maintenance</html>"
        resp.json.side_effect = ValueError("Expecting value")
        synchronizer = VoucherSynchronizer(engine, client, tokens)

        with patch.object(client.session, "request", return_value=resp):
            with pytest.raises(UpstreamError, match="unreadable"):
                synchronizer.sync_purchase(profile.user_id, item.id)

        session.expire_all()
        assert session.get(InventoryItem, item.id).fortnox_sync_status == "failed"
        entries = _log_entries(session)
        assert [e.sync_status for e in entries] == ["failed"]
        assert entries[0].error_message == "<html>Service maintenance</html>"

    def test_no_integration(self, synchronizer, fortnox, session, profile, make_item):
        item = make_item()

        with pytest.raises(NotFoundError, match="connect to Fortnox"):
            synchronizer.sync_purchase(profile.user_id, item.id)
        fortnox.post_voucher.assert_not_called()
        assert _log_entries(session) == []

    def test_unknown_item(self, synchronizer, profile):
        with pytest.raises(NotFoundError, match="Inventory item not found"):
            synchronizer.sync_purchase(profile.user_id, "missing")


class TestSyncPending:
    def test_batch_continues_after_failure(
        self, synchronizer, fortnox, profile, make_item, make_integration
    ):
        make_integration()
        first = make_item(registration_number="AAA111", purchase_date=date(2024, 1, 1))
        second = make_item(registration_number="BBB222", purchase_date=date(2024, 2, 1))
        make_item(registration_number="CCC333", fortnox_sync_status="synced")
        fortnox.post_voucher.side_effect = [
            UpstreamError("Kontot finns inte", upstream_status=400, body="raw"),
            {"VoucherSeries": "A", "VoucherNumber": 20},
        ]

        result = synchronizer.sync_pending(profile.user_id)

        statuses = {r["inventory_item_id"]: r["status"] for r in result["results"]}
        assert statuses == {first.id: "failed", second.id: "synced"}
        assert result["message"] == "Synced 1 vehicles to Fortnox"

    def test_dead_refresh_token_stops_batch(
        self, synchronizer, fortnox, session, profile, make_item, make_integration
    ):
        make_integration(token_expires_at=datetime.now(UTC) - timedelta(hours=1))
        for registration in ("AAA111", "BBB222", "CCC333"):
            make_item(registration_number=registration)
        fortnox.refresh_token.side_effect = UpstreamError("invalid_grant", upstream_status=400)

        with pytest.raises(ReconnectRequired):
            synchronizer.sync_pending(profile.user_id)

        fortnox.refresh_token.assert_called_once()
        fortnox.post_voucher.assert_not_called()
        errors = session.scalars(sa.select(FortnoxErrorLog)).all()
        assert [e.type for e in errors] == ["refresh_token_error"]

    def test_no_integration_is_fatal(self, synchronizer, profile, make_item):
        make_item()
        with pytest.raises(NotFoundError):
            synchronizer.sync_pending(profile.user_id)


class TestSyncLog:
    def test_lists_entries_for_item(
        self, synchronizer, fortnox, profile, make_item, make_integration
    ):
        make_integration()
        item = make_item()
        fortnox.post_voucher.return_value = {"VoucherSeries": "A", "VoucherNumber": 21}
        synchronizer.sync_purchase(profile.user_id, item.id)

        result = synchronizer.list_sync_log(profile.user_id, item.id)

        assert result["count"] == 1
        assert result["entries"][0]["sync_status"] == "success"
        assert result["entries"][0]["fortnox_verification_number"] == "21"
