"""HTTP liveness probing for broken-link scans."""

import asyncio
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from bookmark_pipeline.config import DEFAULT_USER_AGENT

logger = structlog.get_logger(__name__)

# Servers that reject HEAD outright get one GET before being judged.
_HEAD_UNSUPPORTED = {405, 501}


@dataclass(frozen=True)
class LinkStatus:
    """Outcome of one probe. ``status_code`` is None when no response arrived."""

    url: str
    is_broken: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


class LinkChecker:
    """Probe URLs with HEAD (GET fallback), following redirects."""

    def __init__(
        self,
        timeout: float = 10.0,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": user_agent},
            transport=transport,
        )

    async def check(self, url: str) -> LinkStatus:
        """Probe one URL. Never raises for network-level failures.

        2xx/3xx is healthy; 4xx/5xx, timeouts and connection errors are broken.
        The whole probe, redirects and GET fallback included, is bounded by
        ``timeout`` seconds.
        """
        try:
            status = await asyncio.wait_for(self._probe(url), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.info("link_probe_timeout", url=url, timeout=self.timeout)
            return LinkStatus(
                url=url, is_broken=True, error=f"timeout: no response within {self.timeout}s"
            )
        except httpx.TimeoutException as e:
            logger.info("link_probe_timeout", url=url, timeout=self.timeout)
            return LinkStatus(url=url, is_broken=True, error=f"timeout: {e}")
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.info("link_probe_error", url=url, error=str(e))
            return LinkStatus(url=url, is_broken=True, error=str(e))

        return LinkStatus(url=url, is_broken=status >= 400, status_code=status)

    async def _probe(self, url: str) -> int:
        response = await self._client.head(url)
        if response.status_code in _HEAD_UNSUPPORTED:
            async with self._client.stream("GET", url) as streamed:
                return streamed.status_code
        return response.status_code

    async def close(self) -> None:
        await self._client.aclose()
