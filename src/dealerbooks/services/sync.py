import logging
from datetime import UTC, datetime

import sqlalchemy as sa
from sqlalchemy.orm import Session

from dealerbooks.db import InventoryItem, Profile, SyncLogEntry
from dealerbooks.errors import DealerbooksError, NotFoundError, ReconnectRequired, UpstreamError
from dealerbooks.retry import retry_on_token_expiry
from dealerbooks.services.inventory import (
    SYNC_FAILED,
    SYNC_PENDING,
    SYNC_SYNCED,
    load_owned_item,
)

logger = logging.getLogger(__name__)


def build_purchase_voucher(
    item: InventoryItem, asset_account: int, cash_account: int, series: str = ""
) -> dict:
    """Two-row purchase voucher: the vehicle into stock, the payment out of the till.

    Accounts used (BAS-kontoplan, defaults):
      1465: Lager fordon (debit: purchase price)
      1910: Kassa (credit: purchase price)
    """
    name = " ".join(p for p in (item.brand, item.model) if p)
    voucher = {
        "Description": f"Fordonsinköp - {name} ({item.registration_number})",
        "TransactionDate": item.purchase_date.isoformat(),
        "VoucherRows": [
            {
                "Account": asset_account,
                "Debit": item.purchase_price,
                "Credit": 0,
                "Description": f"Inköp {name}",
            },
            {
                "Account": cash_account,
                "Debit": 0,
                "Credit": item.purchase_price,
                "Description": f"Betalning {name}",
            },
        ],
    }
    if series:
        voucher["VoucherSeries"] = series
    return voucher


def log_entry_to_dict(entry: SyncLogEntry) -> dict:
    return {
        "id": entry.id,
        "inventory_item_id": entry.inventory_item_id,
        "sync_type": entry.sync_type,
        "sync_status": entry.sync_status,
        "sync_data": entry.sync_data,
        "error_message": entry.error_message,
        "fortnox_verification_number": entry.fortnox_verification_number,
        "created_at": entry.created_at.isoformat(),
    }


class VoucherSynchronizer:
    """Books vehicle purchases in Fortnox.

    Each attempt writes exactly one ``SyncLogEntry`` and leaves the item
    either ``synced`` (with the voucher number) or ``failed``.
    """

    def __init__(
        self,
        engine,
        client,
        tokens,
        asset_account: int = 1465,
        cash_account: int = 1910,
        series: str = "",
    ):
        self.engine = engine
        self.client = client
        self.tokens = tokens
        self.asset_account = asset_account
        self.cash_account = cash_account
        self.series = series

    def sync_purchase(self, user_id: str, item_id: str) -> dict:
        with Session(self.engine) as session:
            item = load_owned_item(session, user_id, item_id, for_update=True)

            if item.fortnox_sync_status == SYNC_SYNCED:
                logger.info(
                    "Item already synced to Fortnox",
                    extra={"user_id": user_id, "inventory_item_id": item_id},
                )
                return {
                    "success": True,
                    "already_synced": True,
                    "verification_number": item.fortnox_verification_number,
                    "message": "Already synced",
                }

            integration = self.tokens.get_active_integration(session, user_id)
            access_token = self.tokens.ensure_fresh(session, integration)

            voucher = build_purchase_voucher(
                item, self.asset_account, self.cash_account, self.series
            )
            entry = SyncLogEntry(
                inventory_item_id=item.id,
                user_id=user_id,
                sync_type="purchase",
                sync_status="pending",
                sync_data=voucher,
            )
            session.add(entry)
            session.flush()

            post_voucher = retry_on_token_expiry(
                lambda: self.tokens.force_refresh(session, integration)
            )(self.client.post_voucher)

            try:
                created = post_voucher(access_token, voucher)
            except DealerbooksError as exc:
                raw = exc.body if isinstance(exc, UpstreamError) and exc.body else exc.message
                item.fortnox_sync_status = SYNC_FAILED
                entry.sync_status = "failed"
                entry.error_message = raw
                session.commit()
                logger.error(
                    "Fortnox purchase sync failed: %s",
                    exc.message,
                    extra={"user_id": user_id, "inventory_item_id": item_id},
                )
                raise

            number = created.get("VoucherNumber")
            series = created.get("VoucherSeries") or self.series or None
            verification_number = str(number) if number is not None else None

            item.fortnox_sync_status = SYNC_SYNCED
            item.fortnox_verification_number = verification_number
            item.fortnox_voucher_series = series
            item.fortnox_synced_at = datetime.now(UTC)
            entry.sync_status = "success"
            entry.fortnox_verification_number = verification_number
            session.commit()

            logger.info(
                "Vehicle synced to Fortnox as voucher %s-%s",
                series,
                verification_number,
                extra={
                    "user_id": user_id,
                    "inventory_item_id": item_id,
                    "voucher": f"{series}-{verification_number}",
                },
            )
            return {
                "success": True,
                "already_synced": False,
                "verification_number": verification_number,
                "voucher_series": series,
                "message": "Vehicle successfully synced to Fortnox",
            }

    def sync_pending(self, user_id: str) -> dict:
        """Sync every pending or failed item in the user's organization, one at a time."""
        with Session(self.engine) as session:
            profile = session.get(Profile, user_id)
            if not profile:
                raise NotFoundError(f"Profile {user_id} not found")
            candidates = session.execute(
                sa.select(InventoryItem.id, InventoryItem.registration_number)
                .where(
                    InventoryItem.organization_id == profile.organization_id,
                    InventoryItem.fortnox_sync_status.in_((SYNC_PENDING, SYNC_FAILED)),
                )
                .order_by(InventoryItem.purchase_date, InventoryItem.created_at)
            ).all()

        results = []
        for item_id, registration in candidates:
            try:
                outcome = self.sync_purchase(user_id, item_id)
            except (NotFoundError, ReconnectRequired):
                # No integration or a dead refresh token ends the whole batch
                raise
            except DealerbooksError as exc:
                results.append(
                    {
                        "inventory_item_id": item_id,
                        "registration_number": registration,
                        "status": "failed",
                        "error": exc.message,
                    }
                )
                continue
            results.append(
                {
                    "inventory_item_id": item_id,
                    "registration_number": registration,
                    "status": "already_synced" if outcome["already_synced"] else "synced",
                    "verification_number": outcome["verification_number"],
                }
            )

        synced = sum(1 for r in results if r["status"] == "synced")
        return {
            "success": True,
            "results": results,
            "message": f"Synced {synced} vehicles to Fortnox",
        }

    def list_sync_log(self, user_id: str, item_id: str | None = None) -> dict:
        with Session(self.engine) as session:
            query = sa.select(SyncLogEntry).where(SyncLogEntry.user_id == user_id)
            if item_id:
                load_owned_item(session, user_id, item_id)
                query = sa.select(SyncLogEntry).where(SyncLogEntry.inventory_item_id == item_id)
            entries = session.scalars(query.order_by(SyncLogEntry.id)).all()
            return {"count": len(entries), "entries": [log_entry_to_dict(e) for e in entries]}
