import logging
from pathlib import PurePosixPath

from sqlalchemy.orm import Session

from dealerbooks.db import log_fortnox_error
from dealerbooks.errors import NotFoundError, UpstreamError, ValidationError
from dealerbooks.services.inventory import load_owned_item

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = "bokforingsunderlag.pdf"


class AttachmentUploader:
    """Uploads a stored document to Fortnox and links it to a voucher.

    A single attempt per call; Fortnox errors are logged and re-raised as-is.
    """

    def __init__(self, engine, client, tokens, storage, bucket: str = "down-payment-docs"):
        self.engine = engine
        self.client = client
        self.tokens = tokens
        self.storage = storage
        self.bucket = bucket

    def upload(
        self,
        user_id: str,
        series: str,
        number: str,
        item_id: str | None = None,
        document_path: str | None = None,
    ) -> dict:
        if not series or number in (None, ""):
            raise ValidationError("Voucher series and number are required")
        if not item_id and not document_path:
            raise ValidationError("Either a vehicle or a document path is required")

        with Session(self.engine) as session:
            if not document_path:
                item = load_owned_item(session, user_id, item_id)
                document_path = item.purchase_documentation
                if not document_path:
                    raise NotFoundError("No purchase documentation found")

            integration = self.tokens.get_active_integration(session, user_id)
            access_token = self.tokens.ensure_fresh(session, integration)

            content = self.storage.download(self.bucket, document_path)
            filename = PurePosixPath(document_path).name or DEFAULT_FILENAME

            try:
                attachment = self.client.upload_attachment(
                    access_token, series, str(number), filename, content
                )
            except UpstreamError as exc:
                log_fortnox_error(
                    session,
                    user_id,
                    "attachment_error",
                    exc.message,
                    {
                        "series": series,
                        "number": str(number),
                        "document_path": document_path,
                        "status": exc.upstream_status,
                        "response": exc.body,
                    },
                )
                session.commit()
                raise

        logger.info(
            "Attached %s to voucher %s-%s",
            filename,
            series,
            number,
            extra={"user_id": user_id, "voucher": f"{series}-{number}"},
        )
        return {
            "success": True,
            "message": f"Bokföringsunderlag uppladdat till verifikat {series}-{number}",
            "attachment": attachment,
        }
