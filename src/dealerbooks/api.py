"""HTTP JSON API for the dealership back office.

Every endpoint except ``/health`` takes a POST with a small JSON body and an
``Authorization: Bearer <token>`` header, and answers ``{"success": true, ...}``
or ``{"success": false, "error": ...}``.
"""

import logging
from dataclasses import dataclass
from datetime import date

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from dealerbooks.auth import authenticate, require_same_user
from dealerbooks.config import Settings, get_settings
from dealerbooks.db import Profile, init_db
from dealerbooks.errors import DealerbooksError, ReconnectRequired, UpstreamError, ValidationError
from dealerbooks.fortnox.client import FortnoxClient
from dealerbooks.fortnox.tokens import TokenManager
from dealerbooks.services.attachments import AttachmentUploader
from dealerbooks.services.corrections import CorrectionPoster
from dealerbooks.services.inventory import InventoryService
from dealerbooks.services.sync import VoucherSynchronizer
from dealerbooks.storage import DocumentStorage
from dealerbooks.vat import determine_vat_type

logger = logging.getLogger(__name__)

CORS_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]


@dataclass
class Services:
    engine: object
    client: FortnoxClient
    tokens: TokenManager
    inventory: InventoryService
    sync: VoucherSynchronizer
    attachments: AttachmentUploader
    corrections: CorrectionPoster


def create_services(settings: Settings, engine, client=None, storage=None) -> Services:
    """Wire services from settings. ``client`` and ``storage`` can be injected."""
    client = client or FortnoxClient.from_settings(settings)
    storage = storage or DocumentStorage(settings.storage_path)
    tokens = TokenManager(
        engine, client, redirect_uri=settings.fortnox_redirect_uri, scope=settings.fortnox_scope
    )
    return Services(
        engine=engine,
        client=client,
        tokens=tokens,
        inventory=InventoryService(engine),
        sync=VoucherSynchronizer(
            engine,
            client,
            tokens,
            asset_account=settings.fortnox_asset_account,
            cash_account=settings.fortnox_cash_account,
            series=settings.fortnox_voucher_series,
        ),
        attachments=AttachmentUploader(
            engine, client, tokens, storage, bucket=settings.purchase_docs_bucket
        ),
        corrections=CorrectionPoster(
            engine, client, tokens, default_series=settings.fortnox_correction_series
        ),
    )


# Request bodies


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PurchaseRequest(_Body):
    registration_number: str
    brand: str
    purchase_date: date
    purchase_price: float
    model: str | None = None
    chassis_number: str | None = None
    year_model: int | None = None
    mileage: int | None = None
    first_registration_date: date | None = None
    purchase_channel: str | None = None
    seller: str | None = None
    purchaser: str | None = None
    vat_type: str | None = None
    down_payment: float | None = None
    expected_selling_price: float | None = None
    purchase_documentation: str | None = None
    comment: str | None = None
    status: str | None = None


class ItemRequest(_Body):
    inventory_item_id: str = Field(alias="inventoryItemId")


class ListRequest(_Body):
    status: str | None = None
    sync_status: str | None = Field(default=None, alias="syncStatus")


class UpdateRequest(ItemRequest):
    changes: dict


class StatusRequest(ItemRequest):
    status: str


class SaleRequest(ItemRequest):
    selling_price: float = Field(alias="sellingPrice")
    selling_date: date | None = Field(default=None, alias="sellingDate")
    sales_channel: str | None = Field(default=None, alias="salesChannel")


class VatRequest(_Body):
    mileage: int
    first_registration_date: date = Field(alias="firstRegistrationDate")
    purchase_channel: str = Field(alias="purchaseChannel")
    purchase_date: date = Field(alias="purchaseDate")


class OAuthRequest(_Body):
    action: str
    code: str | None = None
    state: str | None = None
    redirect_uri: str | None = Field(default=None, alias="redirectUri")


class SyncLogRequest(_Body):
    inventory_item_id: str | None = Field(default=None, alias="inventoryItemId")


class AttachmentRequest(_Body):
    series: str
    number: str | int
    user_id: str | None = Field(default=None, alias="userId")
    vehicle_id: str | None = Field(default=None, alias="vehicleId")
    document_path: str | None = Field(default=None, alias="documentPath")


class CorrectionRequest(_Body):
    series: str
    number: str | int
    user_id: str | None = Field(default=None, alias="userId")
    correction_series: str | None = Field(default=None, alias="correctionSeries")
    correction_date: date | None = Field(default=None, alias="correctionDate")


# Dependencies


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_profile(
    request: Request, authorization: str | None = Header(default=None)
) -> Profile:
    """Resolve the bearer credential to a profile; rejects missing or unknown tokens."""
    services = get_services(request)
    with Session(services.engine, expire_on_commit=False) as session:
        return authenticate(session, authorization)


# Error mapping


def _error_response(exc: DealerbooksError) -> JSONResponse:
    body = {"success": False, "error": exc.message}
    if isinstance(exc, ReconnectRequired):
        body["reconnect_required"] = True
    elif isinstance(exc, UpstreamError) and exc.upstream_status:
        body["upstream_status"] = exc.upstream_status
    return JSONResponse(status_code=exc.status_code, content=body)


async def handle_domain_error(request: Request, exc: DealerbooksError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "%s on %s: %s",
        type(exc).__name__,
        request.url.path,
        exc.message,
        extra={"endpoint": request.url.path, "status_code": exc.status_code},
    )
    return _error_response(exc)


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ())[1:]) or 'body'}: {err.get('msg')}"
        for err in exc.errors()
    )
    return _error_response(ValidationError(f"Invalid request: {problems}"))


def create_app(
    settings: Settings | None = None, engine=None, client=None, storage=None
) -> FastAPI:
    settings = settings or get_settings()
    engine = engine if engine is not None else init_db(settings.database_path)

    app = FastAPI(
        title="Dealerbooks API",
        description="Vehicle inventory and Fortnox bookkeeping for car dealers",
        version="0.1.0",
    )
    app.state.services = create_services(settings, engine, client=client, storage=storage)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_methods=["*"],
        allow_headers=CORS_HEADERS,
    )
    app.add_exception_handler(DealerbooksError, handle_domain_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    def health():
        return {"status": "healthy"}

    # Inventory

    @app.post("/inventory/create")
    def create_purchase(
        body: PurchaseRequest,
        profile: Profile = Depends(current_profile),
        services: Services = Depends(get_services),
    ):
        data = body.model_dump(exclude_none=True)
        return {"success": True, "item": services.inventory.create_purchase(profile.user_id, data)}

    @app.post("/inventory/get")
    def get_item(
        body: ItemRequest,
        profile: Profile = Depends(current_profile),
        services: Services = Depends(get_services),
    ):
        item = services.inventory.get_item(profile.user_id, body.inventory_item_id)
        return {"success": True, "item": item}

    @app.post("/inventory/list")
    def list_items(
        body: ListRequest,
        profile: Profile = Depends(current_profile),
        services: Services = Depends(get_services),
    ):
        result = services.inventory.list_items(profile.user_id, body.status, body.sync_status)
        return {"success": True, **result}

    @app.post("/inventory/update")
    def update_item(
        body: UpdateRequest,
        profile: Profile = Depends(current_profile),
        services: Services = Depends(get_services),
    ):
        item = services.inventory.update_item(profile.user_id, body.inventory_item_id, body.changes)
        return {"success": True, "item": item}

    @app.post("/inventory/status")
    def set_status(
        body: StatusRequest,
        profile: Profile = Depends(current_profile),
        services: Services = Depends(get_services),
    ):
        item = services.inventory.set_status(profile.user_id, body.inventory_item_id, body.status)
        return {"success": True, "item": item}

    @app.post("/inventory/sale")
    def record_sale(
        body: SaleRequest,
        profile: Profile = Depends(current_profile),
        services: Services = Depends(get_services),
    ):
        item = services.inventory.record_sale(
            profile.user_id,
            body.inventory_item_id,
            body.selling_price,
            body.selling_date,
            body.sales_channel,
        )
        return {"success": True, "item": item}

    @app.post("/vat/determine")
    def determine_vat(body: VatRequest, profile: Profile = Depends(current_profile)):
        vat_type = determine_vat_type(
            body.mileage, body.first_registration_date, body.purchase_channel, body.purchase_date
        )
        return {"success": True, "vat_type": vat_type}

    # Fortnox

    @app.post("/fortnox/oauth")
    def fortnox_oauth(
        body: OAuthRequest,
        profile: Profile = Depends(current_profile),
        services: Services = Depends(get_services),
    ):
        tokens = services.tokens
        if body.action == "get_auth_url":
            return {"success": True, **tokens.begin_connect(profile.user_id, body.redirect_uri)}
        if body.action == "exchange_code":
            return tokens.connect(profile.user_id, body.code, body.state, body.redirect_uri)
        if body.action == "disconnect":
            return tokens.disconnect(profile.user_id)
        if body.action == "get_status":
            return tokens.status(profile.user_id)
        raise ValidationError(f"Invalid action: {body.action!r}")

    @app.post("/fortnox/sync-purchase")
    def sync_purchase(
        body: ItemRequest,
        profile: Profile = Depends(current_profile),
        services: Services = Depends(get_services),
    ):
        return services.sync.sync_purchase(profile.user_id, body.inventory_item_id)

    @app.post("/fortnox/sync-all")
    def sync_all(
        profile: Profile = Depends(current_profile),
        services: Services = Depends(get_services),
    ):
        return services.sync.sync_pending(profile.user_id)

    @app.post("/fortnox/sync-log")
    def sync_log(
        body: SyncLogRequest,
        profile: Profile = Depends(current_profile),
        services: Services = Depends(get_services),
    ):
        result = services.sync.list_sync_log(profile.user_id, body.inventory_item_id)
        return {"success": True, **result}

    @app.post("/fortnox/upload-attachment")
    def upload_attachment(
        body: AttachmentRequest,
        profile: Profile = Depends(current_profile),
        services: Services = Depends(get_services),
    ):
        require_same_user(profile, body.user_id)
        return services.attachments.upload(
            profile.user_id,
            body.series,
            str(body.number),
            item_id=body.vehicle_id,
            document_path=body.document_path,
        )

    @app.post("/fortnox/correction")
    def post_correction(
        body: CorrectionRequest,
        profile: Profile = Depends(current_profile),
        services: Services = Depends(get_services),
    ):
        require_same_user(profile, body.user_id)
        return services.corrections.post_correction(
            profile.user_id,
            body.series,
            str(body.number),
            correction_series=body.correction_series,
            correction_date=body.correction_date,
        )

    @app.post("/fortnox/corrections")
    def list_corrections(
        profile: Profile = Depends(current_profile),
        services: Services = Depends(get_services),
    ):
        return {"success": True, **services.corrections.list_corrections(profile.user_id)}

    @app.post("/fortnox/accounts")
    def list_accounts(
        profile: Profile = Depends(current_profile),
        services: Services = Depends(get_services),
    ):
        accounts = services.tokens.call_with_token(profile.user_id, services.client.list_accounts)
        return {"success": True, "accounts": accounts}

    @app.post("/fortnox/suppliers")
    def list_suppliers(
        profile: Profile = Depends(current_profile),
        services: Services = Depends(get_services),
    ):
        suppliers = services.tokens.call_with_token(profile.user_id, services.client.list_suppliers)
        return {"success": True, "suppliers": suppliers}
