"""
ConnectWise Manage REST API client (read-only).

Only GET requests are issued. Collections are fetched page by page with
minimal field projections to keep payloads small.
"""

import base64
import logging
from typing import Any, Dict, List, Optional

import httpx

from msp_sync.config import ConnectWiseConfig, settings
from msp_sync.core.codebase import CodebaseResolver
from msp_sync.core.errors import ConnectWiseClientError
from msp_sync.core.logging_utils import redact_token, sanitize_for_logging, sanitize_url_for_logging
from msp_sync.core.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


API_PREFIX = "apis/3.0"
ACCEPT_HEADER = "application/vnd.connectwise.com+json"


def build_auth_header(config: ConnectWiseConfig) -> str:
    """Basic auth header for ``companyId+publicKey:privateKey``."""
    credentials = f"{config.company_id}+{config.public_key}:{config.private_key}"
    encoded = base64.b64encode(credentials.encode()).decode()
    return f"Basic {encoded}"


def _error_text(response: httpx.Response) -> str:
    """Extract a short error message from an error response body."""
    try:
        body = response.text
    except Exception:
        return response.reason_phrase or ""
    if not body:
        return response.reason_phrase or ""
    try:
        data = response.json()
    except ValueError:
        return body[:200] + "..." if len(body) > 200 else body
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or body[:200])
    return body[:200]


class ConnectWiseClient:
    """
    Async ConnectWise client with automatic codebase resolution.

    Uses one long-lived ``httpx.AsyncClient``; close it with ``close()`` or
    use the client as an async context manager.

    Page-level failures after the first page are tolerated by
    ``fetch_all_pages``; they are collected in ``fetch_warnings`` so the
    caller can report partial fetches.
    """

    def __init__(
        self,
        config: ConnectWiseConfig,
        *,
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
        rate_limiter: Optional[RateLimiter] = None,
        codebase_resolver: Optional[CodebaseResolver] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.page_size = page_size or settings.cw_page_size
        self.rate_limiter = rate_limiter or RateLimiter(
            delay_ms=settings.cw_api_delay_ms,
            max_retries=settings.cw_api_max_retries,
        )
        self.codebase_resolver = codebase_resolver or CodebaseResolver(
            config,
            timeout=settings.cw_codebase_probe_timeout,
            transport=transport,
        )
        self.fetch_warnings: List[str] = []

        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or settings.cw_request_timeout, connect=10.0),
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            headers={
                "Authorization": build_auth_header(config),
                "Accept": ACCEPT_HEADER,
                "Content-Type": "application/json",
                "clientId": config.client_id,
            },
            transport=transport,
        )
        logger.debug(
            f"ConnectWise client for {config.base_url} "
            f"(company {config.company_id}, public key {redact_token(config.public_key)})"
        )

    async def endpoint_url(self, path: str) -> str:
        """Absolute URL of a collection path such as ``/service/tickets``."""
        if not path or not path.startswith("/"):
            raise ValueError(f"Endpoint must start with '/': {path!r}")
        codebase = await self.codebase_resolver.resolve()
        return f"{self.config.base_url}/{codebase}{API_PREFIX}{path}"

    async def request(
        self,
        path: str,
        *,
        page: int = 1,
        page_size: Optional[int] = None,
        conditions: Optional[str] = None,
        order_by: Optional[str] = None,
        fields: Optional[str] = None,
    ) -> Any:
        """
        Fetch a single page of a collection.

        Returns:
            Decoded JSON body (a list for collection endpoints)

        Raises:
            ConnectWiseClientError: On transport errors, timeouts, non-2xx
                responses or undecodable bodies
        """
        url = await self.endpoint_url(path)
        params: Dict[str, Any] = {"page": page, "pageSize": page_size or self.page_size}
        if conditions:
            params["conditions"] = conditions
        if order_by:
            params["orderBy"] = order_by
        if fields:
            params["fields"] = fields

        try:
            response = await self.client.get(url, params=params)
        except httpx.TimeoutException as e:
            logger.error(f"ConnectWise request timed out: {sanitize_url_for_logging(url)}")
            raise ConnectWiseClientError(f"Request to {path} timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"ConnectWise request failed: {sanitize_url_for_logging(url)}: {type(e).__name__}")
            raise ConnectWiseClientError(f"Request to {path} failed: {e}") from e

        if response.status_code >= 400:
            error_text = sanitize_for_logging(_error_text(response), max_length=200)
            logger.error(
                f"ConnectWise API error for {path} (page {page}): "
                f"{response.status_code} {error_text}"
            )
            raise ConnectWiseClientError(
                f"ConnectWise API error ({response.status_code}): {error_text}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ConnectWiseClientError(f"Invalid JSON from {path}: {e}") from e

    async def fetch_all_pages(
        self,
        path: str,
        *,
        conditions: Optional[str] = None,
        order_by: Optional[str] = None,
        fields: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch every page of a collection query.

        Pages are requested sequentially starting at page 1 while the
        previous page was exactly full. If a page after the first fails,
        the records gathered so far are returned and a warning is recorded
        in ``fetch_warnings``; a failing first page raises.
        """
        results: List[Dict[str, Any]] = []
        page = 1

        while True:
            if page > 1:
                await self.rate_limiter.delay()

            try:
                items = await self.rate_limiter.execute_with_retry(
                    lambda: self.request(
                        path,
                        page=page,
                        page_size=self.page_size,
                        conditions=conditions,
                        order_by=order_by,
                        fields=fields,
                    ),
                    operation_name=f"GET {path} page {page}",
                )
            except ConnectWiseClientError as e:
                if page == 1:
                    raise
                warning = (
                    f"Returning {len(results)} records from {path} despite error on page {page}: {e}"
                )
                logger.warning(warning)
                self.fetch_warnings.append(warning)
                return results

            if not isinstance(items, list):
                logger.warning(f"Unexpected response format for {path} on page {page}")
                break

            results.extend(items)
            logger.debug(f"{path} page {page}: {len(items)} records (total: {len(results)})")

            if len(items) < self.page_size:
                break
            page += 1

        logger.info(f"Fetched {len(results)} records from {path} in {page} page(s)")
        return results

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self.client.aclose()

    async def __aenter__(self) -> "ConnectWiseClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
