"""Resolution of the environment specific ConnectWise codebase path."""

import asyncio
import logging
from typing import Optional
from urllib.parse import urlparse

import httpx

from msp_sync.config import ConnectWiseConfig

logger = logging.getLogger(__name__)


# Cloud instances answer with a versioned codebase like "v2017_3/";
# on-premise installs use "v4_6_release/".
DEFAULT_CODEBASE = "v4_6_release/"


def normalize_codebase(codebase: str) -> str:
    """Strip surrounding slashes and ensure a single trailing slash."""
    codebase = codebase.strip().strip("/")
    return f"{codebase}/" if codebase else DEFAULT_CODEBASE


def company_info_url(base_url: str, company_id: str) -> str:
    """
    Build the companyinfo probe URL for a ConnectWise site.

    ``https://api-na.myconnectwise.net`` is probed as
    ``https://na.myconnectwise.net/login/companyinfo/<company>``.
    """
    parsed = urlparse(base_url if "://" in base_url else f"https://{base_url}")
    site = parsed.netloc
    if site.startswith("api-"):
        site = site[len("api-"):]
    return f"https://{site}/login/companyinfo/{company_id}"


class CodebaseResolver:
    """
    Resolve the codebase once per client lifetime.

    An explicit configuration value wins; otherwise one bounded-time probe
    against the companyinfo endpoint is made, falling back to
    ``DEFAULT_CODEBASE`` on any failure. ``resolve()`` never raises.
    """

    def __init__(
        self,
        config: ConnectWiseConfig,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.timeout = timeout
        self._transport = transport
        self._codebase: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def resolved(self) -> Optional[str]:
        return self._codebase

    async def resolve(self) -> str:
        """Return the codebase path, e.g. ``"v2017_3/"``."""
        if self._codebase is not None:
            return self._codebase

        async with self._lock:
            if self._codebase is None:
                self._codebase = await self._detect()
        return self._codebase

    async def _detect(self) -> str:
        if self.config.codebase:
            codebase = normalize_codebase(self.config.codebase)
            logger.info(f"Using configured codebase: {codebase}")
            return codebase

        url = company_info_url(self.config.base_url, self.config.company_id)
        logger.info(f"No codebase configured, probing {url}")

        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            ) as client:
                response = await client.get(url)

            if response.status_code >= 400:
                logger.warning(
                    f"Codebase detection failed with status {response.status_code}, "
                    f"using default {DEFAULT_CODEBASE}"
                )
                return DEFAULT_CODEBASE

            info = response.json()
            codebase = info.get("Codebase") if isinstance(info, dict) else None
            if not codebase or not isinstance(codebase, str):
                logger.warning(f"Codebase missing from companyinfo response, using default {DEFAULT_CODEBASE}")
                return DEFAULT_CODEBASE

            codebase = normalize_codebase(codebase)
            logger.info(f"Detected codebase: {codebase}")
            return codebase

        except httpx.TimeoutException:
            logger.warning(
                f"Codebase detection timed out after {self.timeout}s, using default {DEFAULT_CODEBASE}"
            )
        except httpx.HTTPError as e:
            logger.warning(f"Codebase detection error: {e}, using default {DEFAULT_CODEBASE}")
        except ValueError as e:
            logger.warning(f"Could not parse companyinfo response: {e}, using default {DEFAULT_CODEBASE}")

        return DEFAULT_CODEBASE
