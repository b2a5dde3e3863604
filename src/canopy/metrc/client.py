"""
Async client for the Metrc locations API.

Metrc has no webhooks: everything here is a plain authenticated request.
Auth is HTTP Basic with the integrator's vendor key as the username and the
operator's user key as the password. Every call is scoped to one facility
through the licenseNumber query parameter.

Transient failures (429, 5xx) are retried with exponential backoff; all
other failures surface as MetrcApiError / MetrcTimeoutError so the sync
engine can attribute them to a single item.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from canopy.metrc.credentials import SiteCredentials, metrc_base_url
from canopy.metrc.normalizer import (
    ExternalLocation,
    LocationType,
    dedupe_locations,
    normalize_location,
    normalize_location_type,
    unwrap_list,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
PAGE_SIZE = 20  # v2 maximum
MAX_PAGES = 100


# ── Exceptions ────────────────────────────────────────────────────────────────

class MetrcError(Exception):
    """Base class for Metrc client failures."""


class MetrcApiError(MetrcError):
    """Non-success HTTP response, or a transport failure (status_code=0)."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"Metrc API error {status_code}: {message}")

    def is_retryable(self) -> bool:
        return self.status_code in RETRYABLE_STATUS_CODES

    def is_auth_error(self) -> bool:
        return self.status_code in (401, 403)


class MetrcTimeoutError(MetrcError):
    def __init__(self, endpoint: str, timeout: float):
        self.endpoint = endpoint
        self.timeout = timeout
        super().__init__(f"Metrc request to {endpoint} timed out after {timeout:g}s")


# ── Client ────────────────────────────────────────────────────────────────────

class MetrcClient:
    """
    Thin async wrapper over the Metrc v2 locations endpoints.

    Usage:
        async with MetrcClient(credentials) as client:
            locations = await client.list_locations(credentials.license_number)
    """

    def __init__(
        self,
        credentials: SiteCredentials,
        *,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_initial_delay: float = 1.0,
        retry_backoff: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            credentials: Site credentials; the license number is the default
                facility for every call.
            base_url: Override the state/sandbox URL (tests, proxies).
            transport: Optional httpx transport (httpx.MockTransport in tests).
        """
        self._credentials = credentials
        self._timeout = timeout
        self._max_retries = max_retries
        self._retry_initial_delay = retry_initial_delay
        self._retry_backoff = retry_backoff
        self._http = httpx.AsyncClient(
            base_url=base_url or metrc_base_url(credentials.state_code, credentials.is_sandbox),
            auth=httpx.BasicAuth(credentials.vendor_api_key, credentials.user_api_key),
            headers={"Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, credentials: SiteCredentials, settings) -> "MetrcClient":
        return cls(
            credentials,
            base_url=settings.metrc_base_url,
            timeout=settings.metrc_timeout_seconds,
            max_retries=settings.metrc_max_retries,
            retry_initial_delay=settings.metrc_retry_initial_delay,
            retry_backoff=settings.metrc_retry_backoff,
        )

    async def __aenter__(self) -> "MetrcClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ── Locations ─────────────────────────────────────────────────────────────

    async def list_locations(self, license_number: Optional[str] = None) -> List[ExternalLocation]:
        """Fetch every active location of a facility, deduplicated by Id."""
        rows = await self._get_all_pages("/locations/v2/active", license_number)
        return dedupe_locations(normalize_location(row) for row in rows)

    async def list_location_types(self) -> List[LocationType]:
        """Fetch the facility's location type catalog."""
        rows = await self._get_all_pages("/locations/v2/types", None)
        return [normalize_location_type(row) for row in rows]

    async def create_location(self, name: str, type_id: int, type_name: str) -> None:
        """Create one location.

        Metrc answers with an empty body: the new Id has to be looked up
        afterwards with find_location_by_name().
        """
        payload = [{"Name": name, "LocationTypeId": type_id, "LocationTypeName": type_name}]
        await self._request(
            "POST",
            "/locations/v2/",
            params={"licenseNumber": self._credentials.license_number},
            json=payload,
        )

    async def find_location_by_name(self, name: str) -> Optional[ExternalLocation]:
        """Return the active location with exactly this name, or None.

        If several share the name, the highest Id (the newest) wins.
        """
        matches = [loc for loc in await self.list_locations() if loc.name == name]
        if not matches:
            return None
        return max(matches, key=lambda loc: loc.id)

    # ── HTTP plumbing ─────────────────────────────────────────────────────────

    async def _get_all_pages(self, path: str, license_number: Optional[str]) -> List[Dict[str, Any]]:
        license_number = license_number or self._credentials.license_number
        rows: List[Dict[str, Any]] = []
        for page in range(1, MAX_PAGES + 1):
            payload = await self._request(
                "GET",
                path,
                params={
                    "licenseNumber": license_number,
                    "pageNumber": page,
                    "pageSize": PAGE_SIZE,
                },
            )
            batch = unwrap_list(payload)
            rows.extend(batch)
            if not isinstance(payload, dict):
                break  # bare list: not paginated
            total = payload.get("TotalRecords")
            if not batch or total is None or len(rows) >= int(total):
                break
        return rows

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> Any:
        """Send one request, retrying transient statuses.

        Raises:
            MetrcApiError: non-success status after retries, or network failure.
            MetrcTimeoutError: the request exceeded the client timeout.
        """
        attempt = 0
        while True:
            try:
                response = await self._http.request(method, path, params=params, json=json)
            except httpx.TimeoutException as exc:
                raise MetrcTimeoutError(path, self._timeout) from exc
            except httpx.TransportError as exc:
                raise MetrcApiError(0, f"Network error: unable to reach Metrc API ({exc})") from exc

            if response.is_success:
                if not response.content:
                    return None
                return response.json()

            error = MetrcApiError(response.status_code, response.text)
            if error.is_retryable() and attempt < self._max_retries:
                delay = self._retry_initial_delay * (self._retry_backoff ** attempt)
                logger.warning(
                    "Metrc %s %s returned %d; retrying in %.1fs (attempt %d)",
                    method, path, response.status_code, delay, attempt + 1,
                )
                await asyncio.sleep(delay)
                attempt += 1
                continue
            raise error
