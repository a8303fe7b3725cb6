"""
Pipedrive API Client.
Handles authentication and HTTP requests to the Pipedrive REST API (v1).

Ordinary API failures (4xx/5xx, unparseable bodies) come back as a
failed CRMResult with a structured error tag. Only transport failures
that survive all retries raise, as PipedriveConnectionError.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from app.core.config import Settings, get_settings
from app.core.interfaces.crm import (
    CRMClient,
    CRMListResult,
    CRMRequestError,
    CRMResult,
    ErrorType,
)
from app.integrations.pipedrive.processors import contact_to_person_data
from app.integrations.pipedrive.sanitizer import PayloadSanitizer, format_campaign_subject
from app.integrations.pipedrive.schema import LIST_PAGE_SIZE, get_resource_config
from app.services.crm_sync.timeout_guard import Deadline

logger = logging.getLogger(__name__)

INVALID_RESPONSE = "Invalid response from Pipedrive API"


class PipedriveConnectionError(CRMRequestError):
    """Raised when Pipedrive cannot be reached after all retries."""

    def __init__(self, message: str):
        super().__init__(message, error_type=ErrorType.NETWORK)


class PipedriveClient(CRMClient):
    """
    Pipedrive REST API Client.

    Uses api_token query parameter authentication. The token is
    scrubbed from every log line and error message.
    """

    def __init__(
        self,
        api_token: str,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize Pipedrive client.

        Args:
            api_token: Decrypted Pipedrive API token
            settings: Application settings (defaults to get_settings())
            http_client: Pre-built httpx client (tests pass one with a MockTransport)

        Raises:
            ValueError: If the token is empty
        """
        if not api_token or not api_token.strip():
            raise ValueError("Pipedrive API key is required")

        settings = settings or get_settings()

        self.api_url = settings.pipedrive_api_url
        self._api_token = api_token.strip()
        self.timeout = settings.pipedrive_timeout / 1000
        self.max_retries = settings.pipedrive_max_retries if settings.pipedrive_enable_retries else 0
        self.retry_delay = settings.pipedrive_retry_delay / 1000
        self.rate_limit_delay = settings.pipedrive_rate_limit_delay / 1000
        self.rate_limiting_enabled = settings.pipedrive_enable_rate_limiting
        self.detailed_logging = settings.pipedrive_enable_detailed_logging
        self.sanitizer = PayloadSanitizer(settings)

        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=self.timeout,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

        logger.info(f"PipedriveClient initialized (url: {self.api_url})")

    def _scrub(self, text: str) -> str:
        """Remove the API token from text that may end up in logs or responses."""
        if not text:
            return text
        return text.replace(self._api_token, "***")

    async def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        deadline: Optional[Deadline] = None,
        require_id: bool = False,
    ) -> CRMResult:
        """
        Makes an authenticated request to the Pipedrive API.

        Args:
            method: HTTP method (GET, POST, PUT)
            endpoint: API endpoint (e.g., "/persons")
            params: Query parameters
            json: JSON body for POST/PUT
            deadline: Run/batch deadline; caps the request timeout
            require_id: Treat a success body without data.id as invalid

        Returns:
            CRMResult

        Raises:
            PipedriveConnectionError: If the host cannot be reached after all retries
            CRMRequestError: If the deadline expired before the request could start
        """
        url = f"{self.api_url}{endpoint}"
        query = dict(params or {})
        query["api_token"] = self._api_token

        for attempt in range(1, self.max_retries + 2):
            timeout = self.timeout
            if deadline is not None:
                if deadline.expired:
                    raise CRMRequestError(
                        f"{method} {endpoint} timed out: sync deadline exhausted",
                        error_type=ErrorType.NETWORK,
                    )
                timeout = deadline.cap(self.timeout)

            try:
                response = await self._client.request(
                    method=method,
                    url=url,
                    params=query,
                    json=json,
                    timeout=timeout,
                )

            except httpx.TransportError as e:
                error = self._scrub(str(e)) or e.__class__.__name__
                logger.error(f"❌ Pipedrive request failed (attempt {attempt}): {method} {endpoint}: {error}")

                if attempt <= self.max_retries:
                    delay = self.retry_delay * (2 ** (attempt - 1))
                    logger.info(f"🔄 Retrying in {delay:.1f}s...")
                    await asyncio.sleep(delay)
                    continue

                raise PipedriveConnectionError(f"Failed to connect to Pipedrive API: {error}") from None

            return self._interpret_response(response, method, endpoint, require_id)

        # Unreachable: the loop either returns or raises
        raise PipedriveConnectionError("Failed to connect to Pipedrive API: max retries exceeded")

    def _interpret_response(
        self,
        response: httpx.Response,
        method: str,
        endpoint: str,
        require_id: bool,
    ) -> CRMResult:
        status_code = response.status_code
        body = self._parse_body(response)

        if status_code == 429 and self.rate_limiting_enabled:
            retry_after = self._parse_retry_after(response.headers.get("retry-after"))
            logger.warning(f"⚠️ Pipedrive rate limit exceeded. Retry after {retry_after}s")
            return CRMResult(
                success=False,
                error="Rate limit exceeded",
                error_type=ErrorType.RATE_LIMIT,
                status_code=status_code,
                retry_after=retry_after,
            )

        if status_code == 401:
            logger.error("❌ Pipedrive API key expired or invalid")
            return CRMResult(
                success=False,
                error="API key expired or invalid",
                error_type=ErrorType.AUTHENTICATION,
                status_code=status_code,
            )

        if status_code >= 400:
            error = None
            if isinstance(body, dict):
                error = body.get("error") or body.get("error_info")
            error = self._scrub(str(error)) if error else f"HTTP {status_code}: {response.reason_phrase}"

            if self.detailed_logging:
                logger.error(
                    f"❌ Pipedrive API error: {method} {endpoint} -> {status_code}: {error}",
                    extra={"status_code": status_code, "endpoint": endpoint},
                )

            return CRMResult(
                success=False,
                error=error,
                error_type=self._error_type_for_status(status_code),
                status_code=status_code,
            )

        if not isinstance(body, dict):
            logger.error(f"❌ {INVALID_RESPONSE}: {method} {endpoint}")
            return CRMResult(
                success=False,
                error=INVALID_RESPONSE,
                error_type=ErrorType.UNKNOWN,
                status_code=status_code,
            )

        if body.get("success") is False:
            return CRMResult(
                success=False,
                error=self._scrub(str(body.get("error") or INVALID_RESPONSE)),
                error_type=ErrorType.UNKNOWN,
                status_code=status_code,
            )

        data = body.get("data")
        raw_id = data.get("id") if isinstance(data, dict) else None
        remote_id = self._parse_record_id(raw_id)

        if raw_id is not None and remote_id is None:
            logger.error(f"❌ Pipedrive returned a malformed record id {raw_id!r}: {method} {endpoint}")
            return CRMResult(
                success=False,
                error=INVALID_RESPONSE,
                error_type=ErrorType.UNKNOWN,
                status_code=status_code,
            )

        if require_id and remote_id is None:
            logger.error(f"❌ Pipedrive returned no record id: {method} {endpoint}")
            return CRMResult(
                success=False,
                error=INVALID_RESPONSE,
                error_type=ErrorType.UNKNOWN,
                status_code=status_code,
            )

        if self.detailed_logging:
            logger.debug(f"Pipedrive {method} {endpoint} -> {status_code}")

        return CRMResult(
            success=True,
            remote_id=remote_id,
            data=body,
            status_code=status_code,
        )

    @staticmethod
    def _parse_record_id(value: Any) -> Optional[int]:
        if value is None or isinstance(value, bool):
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        if not response.content or not response.content.strip():
            return None
        try:
            return response.json()
        except ValueError:
            return None

    def _parse_retry_after(self, value: Optional[str]) -> float:
        if value:
            try:
                return float(value)
            except ValueError:
                pass
        return self.rate_limit_delay

    @staticmethod
    def _error_type_for_status(status_code: int) -> ErrorType:
        if status_code == 429:
            return ErrorType.RATE_LIMIT
        if status_code in (400, 422):
            return ErrorType.VALIDATION
        return ErrorType.UNKNOWN

    # =========================================================================
    # Connection
    # =========================================================================

    async def test_connection(self) -> CRMResult:
        """
        Verifies the token by fetching the authenticated user (GET /users/me).
        """
        try:
            result = await self.request("GET", "/users/me")
        except CRMRequestError as e:
            return CRMResult(success=False, error=str(e), error_type=e.error_type)

        if result.success:
            logger.info("✅ Pipedrive connection verified")
        else:
            logger.warning(f"⚠️ Pipedrive connection test failed: {result.error}")
        return result

    # =========================================================================
    # Listing
    # =========================================================================

    async def fetch_all(
        self,
        resource: str,
        limit: int = LIST_PAGE_SIZE,
        max_pages: int = 0,
        deadline: Optional[Deadline] = None,
    ) -> CRMListResult:
        """
        Fetches all records of a resource with start/limit pagination.

        Args:
            resource: Resource name (e.g., "persons")
            limit: Records per page
            max_pages: Maximum pages to fetch (0 = unlimited)
            deadline: Run deadline

        Returns:
            CRMListResult with every fetched record, or the first page failure
        """
        endpoint = get_resource_config(resource)["endpoint"]
        items: List[Dict[str, Any]] = []
        start = 0
        page = 1

        while True:
            logger.debug(f"Fetching {endpoint} page {page}...")
            result = await self.request(
                "GET",
                endpoint,
                params={"start": start, "limit": limit},
                deadline=deadline,
            )

            if not result.success:
                return CRMListResult(
                    success=False,
                    items=items,
                    error=result.error,
                    error_type=result.error_type,
                    status_code=result.status_code,
                    retry_after=result.retry_after,
                )

            data = result.data.get("data") or []
            if not isinstance(data, list):
                return CRMListResult(
                    success=False,
                    items=items,
                    error=INVALID_RESPONSE,
                    error_type=ErrorType.UNKNOWN,
                )

            items.extend(data)
            logger.info(f"  Page {page}: Fetched {len(data)} {resource} (Total: {len(items)})")

            pagination = (result.data.get("additional_data") or {}).get("pagination") or {}
            if not data or not pagination.get("more_items_in_collection"):
                break

            if max_pages > 0 and page >= max_pages:
                logger.info(f"  Stopping after {max_pages} pages (max_pages limit)")
                break

            start = pagination.get("next_start", start + len(data))
            page += 1

        logger.info(f"Total {resource} fetched: {len(items)} records")
        return CRMListResult(success=True, items=items)

    async def list_persons(self, deadline: Optional[Deadline] = None) -> CRMListResult:
        return await self.fetch_all("persons", deadline=deadline)

    async def list_organizations(self, deadline: Optional[Deadline] = None) -> CRMListResult:
        return await self.fetch_all("organizations", deadline=deadline)

    async def search(self, resource: str, term: str, exact_match: bool = False) -> CRMListResult:
        """Searches persons or organizations by term (name, email, phone)."""
        endpoint = get_resource_config(resource)["search_endpoint"]
        result = await self.request(
            "GET",
            endpoint,
            params={"term": term, "exact_match": str(exact_match).lower()},
        )
        if not result.success:
            return CRMListResult(
                success=False,
                error=result.error,
                error_type=result.error_type,
                status_code=result.status_code,
                retry_after=result.retry_after,
            )

        found = (result.data.get("data") or {}).get("items") or []
        return CRMListResult(success=True, items=[entry.get("item", entry) for entry in found])

    async def search_persons(self, term: str) -> CRMListResult:
        return await self.search("persons", term)

    async def search_organizations(self, term: str) -> CRMListResult:
        return await self.search("organizations", term)

    # =========================================================================
    # Writes
    # =========================================================================

    async def _create(self, resource: str, payload: Dict[str, Any], deadline: Optional[Deadline]) -> CRMResult:
        endpoint = get_resource_config(resource)["endpoint"]
        return await self.request("POST", endpoint, json=payload, deadline=deadline, require_id=True)

    async def _update(
        self,
        resource: str,
        record_id: int,
        payload: Dict[str, Any],
        deadline: Optional[Deadline],
    ) -> CRMResult:
        endpoint = f"{get_resource_config(resource)['endpoint']}/{record_id}"
        result = await self.request("PUT", endpoint, json=payload, deadline=deadline)
        if result.success and result.remote_id is None:
            result.remote_id = int(record_id)
        return result

    async def create_person(self, data: Dict[str, Any], deadline: Optional[Deadline] = None) -> CRMResult:
        return await self._create("persons", self.sanitizer.build_person_payload(data), deadline)

    async def update_person(
        self,
        person_id: int,
        data: Dict[str, Any],
        deadline: Optional[Deadline] = None,
    ) -> CRMResult:
        return await self._update("persons", person_id, self.sanitizer.sanitize_update_data(data), deadline)

    async def create_or_update_person(self, contact, deadline: Optional[Deadline] = None) -> CRMResult:
        """
        Pushes a local Contact: updates the linked person, or creates a new one.

        The caller persists the returned remote id.
        """
        data = contact_to_person_data(contact)
        if contact.remote_person_id:
            payload = self.sanitizer.build_person_payload(data)
            return await self._update("persons", contact.remote_person_id, payload, deadline)
        return await self.create_person(data, deadline)

    async def create_organization(self, data: Dict[str, Any], deadline: Optional[Deadline] = None) -> CRMResult:
        return await self._create("organizations", self.sanitizer.build_organization_payload(data), deadline)

    async def update_organization(
        self,
        org_id: int,
        data: Dict[str, Any],
        deadline: Optional[Deadline] = None,
    ) -> CRMResult:
        return await self._update("organizations", org_id, self.sanitizer.sanitize_update_data(data), deadline)

    async def create_activity(self, data: Dict[str, Any], deadline: Optional[Deadline] = None) -> CRMResult:
        return await self._create("activities", self.sanitizer.build_activity_payload(data), deadline)

    async def update_activity(
        self,
        activity_id: int,
        data: Dict[str, Any],
        deadline: Optional[Deadline] = None,
    ) -> CRMResult:
        data = dict(data or {})
        shortcode = data.pop("campaign_shortcode", None)
        payload = self.sanitizer.sanitize_update_data(data)
        if payload.get("subject"):
            payload["subject"] = format_campaign_subject(payload["subject"], shortcode)
            payload["subject"] = payload["subject"][: self.sanitizer.max_subject_length]
        return await self._update("activities", activity_id, payload, deadline)

    async def create_deal(self, data: Dict[str, Any], deadline: Optional[Deadline] = None) -> CRMResult:
        return await self._create("deals", self.sanitizer.sanitize_update_data(data), deadline)

    async def update_deal(
        self,
        deal_id: int,
        data: Dict[str, Any],
        deadline: Optional[Deadline] = None,
    ) -> CRMResult:
        return await self._update("deals", deal_id, self.sanitizer.sanitize_update_data(data), deadline)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def close(self):
        """Closes the HTTP client (only if this instance created it)."""
        if self._owns_client:
            await self._client.aclose()
        logger.info("PipedriveClient closed")

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
