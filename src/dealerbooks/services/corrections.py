import logging
from datetime import date

import sqlalchemy as sa
from sqlalchemy.orm import Session

from dealerbooks.db import CorrectionRecord, log_fortnox_error
from dealerbooks.errors import DealerbooksError, NotFoundError, UpstreamError, ValidationError
from dealerbooks.retry import retry_on_token_expiry

logger = logging.getLogger(__name__)


def _amount(value) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def build_correction_rows(rows: list[dict], series: str, number: str) -> list[dict]:
    """Mirror voucher rows: debit becomes credit and vice versa.

    Rows with neither debit nor credit are dropped. Cost center and project
    are carried over when set.
    """
    corrected = []
    for row in rows:
        debit = _amount(row.get("Debit"))
        credit = _amount(row.get("Credit"))
        if debit == 0 and credit == 0:
            continue

        mirrored = {"Account": row["Account"]}
        if credit:
            mirrored["Debit"] = row["Credit"]
        if debit:
            mirrored["Credit"] = row["Debit"]
        mirrored["TransactionInformation"] = f"Makulerar rad från {series}-{number}"
        for key in ("CostCenter", "Project"):
            value = row.get(key)
            if isinstance(value, str) and value.strip():
                mirrored[key] = value
        corrected.append(mirrored)
    return corrected


def correction_to_dict(record: CorrectionRecord) -> dict:
    return {
        "id": record.id,
        "original": f"{record.original_series}-{record.original_number}",
        "correction": f"{record.correction_series}-{record.correction_number}",
        "correction_date": record.correction_date.isoformat(),
        "created_at": record.created_at.isoformat(),
    }


class CorrectionPoster:
    """Reverses a posted voucher with a mirrored correction voucher (makulering)."""

    def __init__(self, engine, client, tokens, default_series: str = "A"):
        self.engine = engine
        self.client = client
        self.tokens = tokens
        self.default_series = default_series

    def post_correction(
        self,
        user_id: str,
        series: str,
        number: str,
        correction_series: str | None = None,
        correction_date: str | date | None = None,
    ) -> dict:
        if not series or number in (None, ""):
            raise ValidationError("Voucher series and number are required")
        number = str(number)
        correction_series = correction_series or self.default_series
        voucher_ref = f"{series}-{number}"

        if isinstance(correction_date, str):
            try:
                correction_date = date.fromisoformat(correction_date)
            except ValueError:
                raise ValidationError(f"Invalid correction date: {correction_date!r}") from None
        transaction_date = correction_date or date.today()

        with Session(self.engine) as session:
            try:
                integration = self.tokens.get_active_integration(session, user_id)
            except NotFoundError as exc:
                self._log_error(session, user_id, exc.message, {})
                raise
            access_token = self.tokens.ensure_fresh(session, integration)

            def refresh() -> str:
                return self.tokens.force_refresh(session, integration)

            try:
                original = retry_on_token_expiry(refresh)(self.client.get_voucher)(
                    access_token, series, number
                )
            except UpstreamError as exc:
                self._log_error(
                    session,
                    user_id,
                    f"Failed to fetch voucher {voucher_ref}",
                    {"status": exc.upstream_status, "response": exc.body},
                )
                if exc.upstream_status == 404:
                    raise NotFoundError(
                        f"Kunde inte hämta verifikat {voucher_ref}. "
                        "Kontrollera att det existerar i Fortnox."
                    ) from exc
                raise

            rows = original.get("VoucherRows") or []
            if not rows:
                self._log_error(session, user_id, f"Voucher {voucher_ref} has no rows", {})
                raise ValidationError("Verifikatet har inga rader att makulera")

            correction_rows = build_correction_rows(rows, series, number)
            if not correction_rows:
                self._log_error(
                    session, user_id, f"No valid rows to correct in voucher {voucher_ref}", {}
                )
                raise ValidationError(
                    "Inga giltiga rader att makulera (alla rader har 0 i debet och kredit)"
                )

            body = {
                "VoucherSeries": correction_series,
                "TransactionDate": transaction_date.isoformat(),
                "Description": f"Ändringsverifikation för verifikat {voucher_ref}",
                "Reference": "Automatisk makulering",
                "VoucherRows": correction_rows,
            }

            try:
                created = retry_on_token_expiry(refresh)(self.client.post_voucher)(
                    integration.access_token, body
                )
            except DealerbooksError as exc:
                self._log_error(
                    session,
                    user_id,
                    "Fortnox API error during correction creation",
                    {
                        "status": getattr(exc, "upstream_status", None),
                        "response": getattr(exc, "body", ""),
                        "request_body": body,
                        "original_voucher": voucher_ref,
                    },
                )
                raise

            created_series = created.get("VoucherSeries") or correction_series
            created_number = str(created.get("VoucherNumber", ""))
            session.add(
                CorrectionRecord(
                    user_id=user_id,
                    original_series=series,
                    original_number=number,
                    correction_series=created_series,
                    correction_number=created_number,
                    correction_date=transaction_date,
                )
            )
            session.commit()

        logger.info(
            "Correction voucher %s-%s created for %s",
            created_series,
            created_number,
            voucher_ref,
            extra={"user_id": user_id, "voucher": voucher_ref},
        )
        return {
            "success": True,
            "correction_voucher": created,
            "message": f"Ändringsverifikat {created_series}-{created_number} skapat",
        }

    def list_corrections(self, user_id: str) -> dict:
        with Session(self.engine) as session:
            records = session.scalars(
                sa.select(CorrectionRecord)
                .where(CorrectionRecord.user_id == user_id)
                .order_by(CorrectionRecord.id)
            ).all()
            return {"count": len(records), "corrections": [correction_to_dict(r) for r in records]}

    def _log_error(self, session: Session, user_id: str, message: str, context: dict) -> None:
        logger.error(message, extra={"user_id": user_id})
        log_fortnox_error(session, user_id, "correction_error", message, context)
        session.commit()
