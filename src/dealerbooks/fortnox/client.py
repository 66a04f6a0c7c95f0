"""Fortnox REST API client.

Covers the parts of the API the back office needs:
  - /oauth-v1/auth, /oauth-v1/token: OAuth2 consent and token lifecycle
  - /3/vouchers: bookkeeping vouchers (verifikationer)
  - /3/voucherattachments: documents linked to a voucher
  - /3/companyinformation, /3/accounts, /3/suppliers: lookups
"""

import logging
import mimetypes
from typing import Protocol
from urllib.parse import urlencode

import requests

from dealerbooks.errors import UpstreamError
from dealerbooks.logging_config import mask_token

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.fortnox.se"
DEFAULT_AUTH_URL = "https://apps.fortnox.se/oauth-v1/auth"
DEFAULT_TOKEN_URL = "https://apps.fortnox.se/oauth-v1/token"

TOKEN_ERROR_MARKERS = ("access-token", "Kan inte logga in")


class AccountingProvider(Protocol):
    """The operations the synchronization flow needs from an accounting system."""

    def post_voucher(self, access_token: str, voucher: dict) -> dict: ...

    def refresh_token(self, refresh_token: str) -> dict: ...

    def upload_attachment(
        self, access_token: str, series: str, number: str, filename: str, content: bytes
    ) -> dict: ...


def _error_message(resp: requests.Response, action: str) -> str:
    """Build a readable message from a Fortnox error response."""
    try:
        data = resp.json()
    except ValueError:
        return f"Fortnox API error during {action}: {resp.status_code} - {resp.text}"

    info = data.get("ErrorInformation") if isinstance(data, dict) else None
    if isinstance(info, dict):
        detail = (
            info.get("message")
            or info.get("Message")
            or info.get("error")
            or info.get("Error")
        )
        if detail:
            return f"Fortnox error during {action}: {detail}"
    if isinstance(data, dict) and data.get("error"):
        detail = data.get("error_description") or data["error"]
        return f"Fortnox error during {action}: {detail}"
    return f"Fortnox API error during {action}: {resp.status_code}"


def _json(resp: requests.Response, action: str) -> dict:
    """Decode a successful response body; a non-JSON body becomes an UpstreamError."""
    try:
        data = resp.json()
    except ValueError as exc:
        raise UpstreamError(
            f"Fortnox returned an unreadable response during {action}",
            upstream_status=resp.status_code,
            body=resp.text,
        ) from exc
    if not isinstance(data, dict):
        raise UpstreamError(
            f"Fortnox returned an unexpected response during {action}",
            upstream_status=resp.status_code,
            body=resp.text,
        )
    return data


def _is_token_rejection(resp: requests.Response) -> bool:
    if resp.status_code == 401:
        return True
    text = resp.text or ""
    return any(marker in text for marker in TOKEN_ERROR_MARKERS)


class FortnoxClient:
    """Client for the Fortnox REST API with OAuth2 bearer authentication."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str = DEFAULT_BASE_URL,
        auth_url: str = DEFAULT_AUTH_URL,
        token_url: str = DEFAULT_TOKEN_URL,
        timeout: int = 30,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url.rstrip("/")
        self.auth_url = auth_url
        self.token_url = token_url
        self.timeout = timeout
        self.session = requests.Session()

    @classmethod
    def from_settings(cls, settings) -> "FortnoxClient":
        return cls(
            client_id=settings.fortnox_client_id,
            client_secret=settings.fortnox_client_secret,
            base_url=settings.fortnox_base_url,
            auth_url=settings.fortnox_auth_url,
            token_url=settings.fortnox_token_url,
            timeout=settings.fortnox_timeout_seconds,
        )

    def _request(
        self, method: str, path: str, access_token: str, action: str, **kwargs
    ) -> requests.Response:
        """Send an authenticated API request and raise UpstreamError on failure."""
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        headers.update(kwargs.pop("headers", {}))
        url = f"{self.base_url}{path}"

        logger.debug("Fortnox %s %s (token %s)", method, path, mask_token(access_token))
        try:
            resp = self.session.request(
                method, url, headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.RequestException as exc:
            raise UpstreamError(f"Fortnox request failed during {action}: {exc}") from exc

        if resp.status_code >= 400:
            message = _error_message(resp, action)
            logger.error(
                "Fortnox %s %s failed: %s",
                method,
                path,
                resp.text[:500],
                extra={"endpoint": path, "status_code": resp.status_code},
            )
            raise UpstreamError(
                message,
                upstream_status=resp.status_code,
                body=resp.text,
                token_expired=_is_token_rejection(resp),
            )
        return resp

    # OAuth2

    def authorization_url(self, redirect_uri: str, state: str, scope: str) -> str:
        """Return the consent URL the user opens to connect their Fortnox company."""
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": scope,
            "state": state,
            "response_type": "code",
            "access_type": "offline",
        }
        return f"{self.auth_url}?{urlencode(params)}"

    def _token_request(self, form: dict, action: str) -> dict:
        try:
            resp = self.session.post(
                self.token_url,
                data=form,
                auth=(self.client_id, self.client_secret),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise UpstreamError(f"Fortnox token request failed during {action}: {exc}") from exc

        if resp.status_code >= 400:
            raise UpstreamError(
                _error_message(resp, action),
                upstream_status=resp.status_code,
                body=resp.text,
            )

        data = _json(resp, action)
        if not data.get("access_token"):
            raise UpstreamError(
                f"Fortnox returned no access token during {action}",
                upstream_status=resp.status_code,
                body=resp.text,
            )
        return data

    def exchange_code(self, code: str, redirect_uri: str) -> dict:
        """Exchange an authorization code for an access/refresh token pair."""
        return self._token_request(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri},
            "code exchange",
        )

    def refresh_token(self, refresh_token: str) -> dict:
        """Exchange a refresh token for a new access/refresh token pair."""
        return self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "token refresh",
        )

    # Lookups

    def get_company_name(self, access_token: str) -> str | None:
        try:
            resp = self._request(
                "GET", "/3/companyinformation", access_token, "company lookup"
            )
            data = _json(resp, "company lookup")
        except UpstreamError as exc:
            logger.warning("Could not fetch Fortnox company information: %s", exc)
            return None
        return data.get("CompanyInformation", {}).get("CompanyName")

    def list_accounts(self, access_token: str) -> list[dict]:
        resp = self._request("GET", "/3/accounts", access_token, "account listing")
        return _json(resp, "account listing").get("Accounts", [])

    def list_suppliers(self, access_token: str) -> list[dict]:
        resp = self._request("GET", "/3/suppliers", access_token, "supplier listing")
        return _json(resp, "supplier listing").get("Suppliers", [])

    # Vouchers

    def post_voucher(self, access_token: str, voucher: dict) -> dict:
        """Create a voucher and return the created Voucher object."""
        resp = self._request(
            "POST",
            "/3/vouchers",
            access_token,
            "voucher creation",
            json={"Voucher": voucher},
            headers={"Content-Type": "application/json"},
        )
        created = _json(resp, "voucher creation").get("Voucher", {})
        logger.info(
            "Created Fortnox voucher %s-%s",
            created.get("VoucherSeries"),
            created.get("VoucherNumber"),
        )
        return created

    def get_voucher(self, access_token: str, series: str, number: str) -> dict:
        resp = self._request(
            "GET", f"/3/vouchers/{series}/{number}", access_token, "voucher lookup"
        )
        return _json(resp, "voucher lookup").get("Voucher", {})

    def upload_attachment(
        self, access_token: str, series: str, number: str, filename: str, content: bytes
    ) -> dict:
        """Upload a document and link it to voucher ``series``-``number``."""
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        resp = self._request(
            "POST",
            "/3/voucherattachments",
            access_token,
            "attachment upload",
            files={"file": (filename, content, content_type)},
            data={"voucherSeries": series, "voucherNumber": str(number)},
        )
        logger.info("Uploaded %s to Fortnox voucher %s-%s", filename, series, number)
        try:
            return resp.json()
        except ValueError:
            return {}
