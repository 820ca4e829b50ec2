"""Ticketing provider integration (Zoho Desk).

:class:`ZohoDeskClient` exchanges the configured OAuth refresh token for a
short-lived access token, caches it on the instance until five minutes
before expiry, and uses it to create tickets and post replies. HTTP outcomes
are translated into the error taxonomy:

* 401/403 -> :class:`AuthorizationMissingError` (re-authorisation needed)
* 429, 5xx, timeouts, connection errors -> :class:`ProviderUnavailableError`
* any other refusal -> :class:`ProviderRejectedError`
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Protocol

import requests

from ..core.errors import (
    AuthorizationMissingError,
    ProviderRejectedError,
    ProviderUnavailableError,
)

logger = logging.getLogger(__name__)

TOKEN_EXPIRY_BUFFER_SECONDS = 5 * 60
FALLBACK_EMAIL = "noreply@example.com"


@dataclass(frozen=True)
class TicketContact:
    name: str | None = None
    email: str | None = None

    @property
    def first_name(self) -> str:
        parts = (self.name or "").split()
        return parts[0] if parts else "Chatbot"

    @property
    def last_name(self) -> str:
        parts = (self.name or "").split()
        return " ".join(parts[1:]) if len(parts) > 1 else "User"


class TicketingProvider(Protocol):
    def create_ticket(self, subject: str, body: str, contact: TicketContact) -> str:
        """Create a ticket and return its external identifier."""

    def post_reply(self, external_id: str, text: str, *, public: bool = True) -> bool:
        ...


def _status_error(status: int, what: str, detail: str) -> Exception:
    if status in (401, 403):
        return AuthorizationMissingError(
            f"{what} rejected by Zoho Desk ({status}); the OAuth token needs "
            f"re-authorization with ticket scopes. {detail}"
        )
    if status == 429 or status >= 500:
        return ProviderUnavailableError(f"{what} failed with HTTP {status}: {detail}")
    return ProviderRejectedError(f"{what} rejected with HTTP {status}: {detail}")


def _json_object(response: requests.Response, what: str) -> Dict[str, Any]:
    """Decode a success body; HTML from proxies or maintenance pages is transient."""
    try:
        data = response.json()
    except ValueError as exc:
        raise ProviderUnavailableError(
            f"{what} returned a non-JSON body (HTTP {response.status_code})"
        ) from exc
    if not isinstance(data, dict):
        raise ProviderUnavailableError(f"{what} returned an unexpected JSON body")
    return data


class ZohoDeskClient:
    """Minimal Zoho Desk REST client built on ``requests``."""

    def __init__(
        self,
        *,
        accounts_url: str,
        desk_api_url: str,
        client_id: str | None,
        client_secret: str | None,
        refresh_token: str | None,
        org_id: str | None = None,
        department_id: str | None = None,
        timeout: float = 30.0,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.accounts_url = accounts_url.rstrip("/")
        self.desk_api_url = desk_api_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.org_id = org_id
        self.department_id = department_id
        self.timeout = timeout
        self._session = session or requests.Session()
        self._clock = clock
        self._access_token: str | None = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # OAuth

    def _token(self) -> str:
        with self._lock:
            if self._access_token and self._expires_at - TOKEN_EXPIRY_BUFFER_SECONDS > self._clock():
                return self._access_token
            return self._refresh()

    def invalidate_token(self) -> None:
        with self._lock:
            self._access_token = None
            self._expires_at = 0.0

    def _refresh(self) -> str:
        if not self.refresh_token:
            raise AuthorizationMissingError("ZOHO_REFRESH_TOKEN is not configured")
        if not self.client_id or not self.client_secret:
            raise AuthorizationMissingError(
                "ZOHO_CLIENT_ID or ZOHO_CLIENT_SECRET is not configured"
            )
        try:
            response = self._session.post(
                f"{self.accounts_url}/oauth/v2/token",
                data={
                    "refresh_token": self.refresh_token,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "grant_type": "refresh_token",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ProviderUnavailableError(f"Zoho token refresh failed: {exc}") from exc
        if response.status_code >= 400:
            if response.status_code >= 500:
                raise ProviderUnavailableError(
                    f"Zoho token refresh failed with HTTP {response.status_code}"
                )
            raise AuthorizationMissingError(
                f"Zoho token refresh rejected with HTTP {response.status_code}"
            )
        data = _json_object(response, "Zoho token refresh")
        token = data.get("access_token")
        if not token:
            # Zoho reports invalid refresh tokens as 200 with an "error" field.
            raise AuthorizationMissingError(
                f"Zoho token refresh returned no access token ({data.get('error', 'unknown')})"
            )
        if data.get("refresh_token"):
            self.refresh_token = data["refresh_token"]
        self._access_token = token
        self._expires_at = self._clock() + float(data.get("expires_in", 3600))
        logger.info("Refreshed Zoho Desk access token")
        return token

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Authorization": f"Zoho-oauthtoken {self._token()}",
            "Content-Type": "application/json",
        }
        if self.org_id:
            headers["orgId"] = self.org_id
        return headers

    def _post(self, url: str, payload: Dict[str, Any], what: str) -> requests.Response:
        try:
            response = self._session.post(
                url, json=payload, headers=self._headers(), timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise ProviderUnavailableError(f"{what} failed: {exc}") from exc
        if response.status_code == 401:
            self.invalidate_token()
        return response

    # ------------------------------------------------------------------
    # Tickets

    def create_ticket(self, subject: str, body: str, contact: TicketContact) -> str:
        email = contact.email or FALLBACK_EMAIL
        payload: Dict[str, Any] = {
            "subject": subject,
            "description": body,
            "email": email,
            "contact": {
                "firstName": contact.first_name,
                "lastName": contact.last_name,
                "email": email,
            },
            "priority": "Medium",
            "status": "Open",
            "channel": "Chat",
        }
        if self.department_id:
            payload["departmentId"] = self.department_id
        response = self._post(f"{self.desk_api_url}/tickets", payload, "Ticket creation")
        if response.status_code >= 400:
            raise _status_error(response.status_code, "Ticket creation", response.text[:500])
        ticket_id = _json_object(response, "Ticket creation").get("id")
        if not ticket_id:
            raise ProviderRejectedError("Zoho Desk returned a ticket without an id")
        logger.info("Created Zoho Desk ticket %s", ticket_id)
        return str(ticket_id)

    def post_reply(self, external_id: str, text: str, *, public: bool = True) -> bool:
        """Add ``text`` to the ticket, trying comments first and then threads."""

        body = {"content": text, "isPublic": public}
        errors: List[str] = []
        for endpoint in ("comments", "threads"):
            url = f"{self.desk_api_url}/tickets/{external_id}/{endpoint}"
            response = self._post(url, body, "Ticket reply")
            if response.status_code < 400:
                return True
            errors.append(f"{endpoint} -> {response.status_code}")
            if response.status_code in (401, 403, 429) or response.status_code >= 500:
                raise _status_error(response.status_code, "Ticket reply", response.text[:500])
        raise ProviderRejectedError(
            f"Zoho Desk refused the reply for ticket {external_id}: {'; '.join(errors)}"
        )


__all__ = [
    "FALLBACK_EMAIL",
    "TicketContact",
    "TicketingProvider",
    "ZohoDeskClient",
]
