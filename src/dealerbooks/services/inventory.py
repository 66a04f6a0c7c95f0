import logging
from datetime import date, datetime

import sqlalchemy as sa
from sqlalchemy.orm import Session

from dealerbooks.db import InventoryItem, Profile
from dealerbooks.errors import NotFoundError, ValidationError
from dealerbooks.vat import determine_vat_type

logger = logging.getLogger(__name__)

STATUS_IN_STOCK = "in_stock"
STATUS_IN_TRANSIT = "in_transit"
STATUS_SOLD = "sold"
STATUSES = (STATUS_IN_STOCK, STATUS_IN_TRANSIT, STATUS_SOLD)

SYNC_PENDING = "pending"
SYNC_SYNCED = "synced"
SYNC_FAILED = "failed"

ALLOWED_TRANSITIONS = {
    STATUS_IN_TRANSIT: {STATUS_IN_STOCK, STATUS_SOLD},
    STATUS_IN_STOCK: {STATUS_IN_TRANSIT, STATUS_SOLD},
    STATUS_SOLD: set(),
}

DATE_FIELDS = {"purchase_date", "first_registration_date", "selling_date"}
INT_FIELDS = {"year_model", "mileage"}
FLOAT_FIELDS = {"purchase_price", "down_payment", "expected_selling_price"}
REQUIRED_FIELDS = {"registration_number", "brand", "purchase_date", "purchase_price"}

# Fields a user may edit directly; sync bookkeeping and ownership are excluded.
EDITABLE_FIELDS = {
    "registration_number",
    "chassis_number",
    "brand",
    "model",
    "year_model",
    "mileage",
    "first_registration_date",
    "purchase_date",
    "purchase_price",
    "purchase_channel",
    "seller",
    "purchaser",
    "vat_type",
    "down_payment",
    "expected_selling_price",
    "purchase_documentation",
    "comment",
}


def normalize_registration(value: str) -> str:
    return "".join(value.split()).upper()


def _parse_date(field: str, value) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"Invalid date for {field}: {value!r}") from None


def _coerce_change(field: str, value):
    """Convert an edited value to its column type; ValidationError when it does not fit."""
    if field in REQUIRED_FIELDS and (value is None or value == ""):
        raise ValidationError(f"{field} cannot be empty")
    if value is None or value == "":
        return None

    if field in DATE_FIELDS:
        return _parse_date(field, value)
    if field == "registration_number":
        registration = normalize_registration(str(value))
        if not registration:
            raise ValidationError("registration_number cannot be empty")
        return registration
    if field in INT_FIELDS or field in FLOAT_FIELDS:
        if isinstance(value, bool):
            raise ValidationError(f"{field} must be a number")
        convert = int if field in INT_FIELDS else float
        try:
            number = convert(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{field} must be a number") from None
        if field == "purchase_price" and number <= 0:
            raise ValidationError("purchase_price must be greater than 0")
        return number
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be text")
    if field == "brand" and not value.strip():
        raise ValidationError("brand cannot be empty")
    return value


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def item_to_dict(item: InventoryItem) -> dict:
    return {
        "id": item.id,
        "user_id": item.user_id,
        "organization_id": item.organization_id,
        "registration_number": item.registration_number,
        "chassis_number": item.chassis_number,
        "brand": item.brand,
        "model": item.model,
        "year_model": item.year_model,
        "mileage": item.mileage,
        "first_registration_date": _iso(item.first_registration_date),
        "purchase_date": _iso(item.purchase_date),
        "purchase_price": item.purchase_price,
        "purchase_channel": item.purchase_channel,
        "seller": item.seller,
        "purchaser": item.purchaser,
        "vat_type": item.vat_type,
        "down_payment": item.down_payment,
        "expected_selling_price": item.expected_selling_price,
        "selling_price": item.selling_price,
        "selling_date": _iso(item.selling_date),
        "sales_channel": item.sales_channel,
        "status": item.status,
        "fortnox_sync_status": item.fortnox_sync_status,
        "fortnox_voucher_series": item.fortnox_voucher_series,
        "fortnox_verification_number": item.fortnox_verification_number,
        "fortnox_synced_at": _iso(item.fortnox_synced_at),
        "purchase_documentation": item.purchase_documentation,
        "comment": item.comment,
    }


def load_owned_item(
    session: Session, user_id: str, item_id: str, for_update: bool = False
) -> InventoryItem:
    """Load an inventory item visible to ``user_id``.

    An item is visible to its creator and to every profile in the same
    organization. Anything else is reported as not found.
    """
    profile = session.get(Profile, user_id)
    query = sa.select(InventoryItem).where(InventoryItem.id == item_id)
    if for_update:
        query = query.with_for_update()
    item = session.scalars(query).first()

    if not item or not profile:
        raise NotFoundError("Inventory item not found")
    if item.user_id != user_id and item.organization_id != profile.organization_id:
        raise NotFoundError("Inventory item not found")
    return item


class InventoryService:
    """Vehicle inventory: purchases, edits, status transitions and sales.

    Items are never deleted; they move through in_transit/in_stock to sold.
    """

    def __init__(self, engine):
        self.engine = engine

    def create_purchase(self, user_id: str, data: dict) -> dict:
        registration = normalize_registration(data.get("registration_number") or "")
        if not registration:
            raise ValidationError("registration_number is required")
        if not data.get("brand"):
            raise ValidationError("brand is required")

        purchase_date = _parse_date("purchase_date", data.get("purchase_date"))
        if purchase_date is None:
            raise ValidationError("purchase_date is required")

        try:
            purchase_price = float(data.get("purchase_price") or 0)
        except (TypeError, ValueError):
            raise ValidationError("purchase_price must be a number") from None
        if purchase_price <= 0:
            raise ValidationError("purchase_price must be greater than 0")

        status = data.get("status") or STATUS_IN_STOCK
        if status not in (STATUS_IN_STOCK, STATUS_IN_TRANSIT):
            raise ValidationError(f"New purchases cannot have status {status!r}")

        first_registration = _parse_date(
            "first_registration_date", data.get("first_registration_date")
        )
        mileage = data.get("mileage")
        channel = data.get("purchase_channel")
        vat_type = data.get("vat_type")
        if not vat_type and channel and mileage is not None and first_registration:
            vat_type = determine_vat_type(int(mileage), first_registration, channel, purchase_date)

        with Session(self.engine) as session:
            profile = session.get(Profile, user_id)
            if not profile:
                raise NotFoundError(f"Profile {user_id} not found")

            item = InventoryItem(
                user_id=user_id,
                organization_id=profile.organization_id,
                registration_number=registration,
                chassis_number=data.get("chassis_number"),
                brand=data["brand"],
                model=data.get("model"),
                year_model=data.get("year_model"),
                mileage=mileage,
                first_registration_date=first_registration,
                purchase_date=purchase_date,
                purchase_price=purchase_price,
                purchase_channel=channel,
                seller=data.get("seller"),
                purchaser=data.get("purchaser"),
                vat_type=vat_type,
                down_payment=data.get("down_payment"),
                expected_selling_price=data.get("expected_selling_price"),
                purchase_documentation=data.get("purchase_documentation"),
                comment=data.get("comment"),
                status=status,
                fortnox_sync_status=SYNC_PENDING,
            )
            session.add(item)
            session.commit()

            logger.info(
                "Registered purchase of %s",
                registration,
                extra={"user_id": user_id, "inventory_item_id": item.id},
            )
            return item_to_dict(item)

    def get_item(self, user_id: str, item_id: str) -> dict:
        with Session(self.engine) as session:
            return item_to_dict(load_owned_item(session, user_id, item_id))

    def list_items(
        self, user_id: str, status: str | None = None, sync_status: str | None = None
    ) -> dict:
        """List items in the user's organization, newest purchase first."""
        with Session(self.engine) as session:
            profile = session.get(Profile, user_id)
            if not profile:
                raise NotFoundError(f"Profile {user_id} not found")

            query = sa.select(InventoryItem).where(
                InventoryItem.organization_id == profile.organization_id
            )
            if status:
                query = query.where(InventoryItem.status == status)
            if sync_status:
                query = query.where(InventoryItem.fortnox_sync_status == sync_status)
            query = query.order_by(InventoryItem.purchase_date.desc(), InventoryItem.created_at)

            items = session.scalars(query).all()
            return {"count": len(items), "items": [item_to_dict(i) for i in items]}

    def update_item(self, user_id: str, item_id: str, changes: dict) -> dict:
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        with Session(self.engine) as session:
            item = load_owned_item(session, user_id, item_id)
            for field, value in changes.items():
                setattr(item, field, _coerce_change(field, value))
            session.commit()
            return item_to_dict(item)

    def set_status(self, user_id: str, item_id: str, status: str) -> dict:
        if status not in STATUSES:
            raise ValidationError(f"Unknown status {status!r}")
        if status == STATUS_SOLD:
            raise ValidationError("Use record_sale to mark an item as sold")

        with Session(self.engine) as session:
            item = load_owned_item(session, user_id, item_id)
            self._check_transition(item, status)
            item.status = status
            session.commit()
            logger.info(
                "Status changed to %s",
                status,
                extra={"user_id": user_id, "inventory_item_id": item_id},
            )
            return item_to_dict(item)

    def record_sale(
        self,
        user_id: str,
        item_id: str,
        selling_price: float,
        selling_date=None,
        sales_channel: str | None = None,
    ) -> dict:
        if selling_price is None or float(selling_price) <= 0:
            raise ValidationError("selling_price must be greater than 0")

        with Session(self.engine) as session:
            item = load_owned_item(session, user_id, item_id)
            self._check_transition(item, STATUS_SOLD)
            item.selling_price = float(selling_price)
            item.selling_date = _parse_date("selling_date", selling_date) or date.today()
            item.sales_channel = sales_channel
            item.status = STATUS_SOLD
            session.commit()
            logger.info(
                "Recorded sale of %s for %.2f",
                item.registration_number,
                item.selling_price,
                extra={"user_id": user_id, "inventory_item_id": item_id},
            )
            return item_to_dict(item)

    @staticmethod
    def _check_transition(item: InventoryItem, new_status: str) -> None:
        if new_status not in ALLOWED_TRANSITIONS.get(item.status, set()):
            raise ValidationError(f"Cannot change status from {item.status} to {new_status}")
