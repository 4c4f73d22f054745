import httpx
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Mapping, Optional
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from manifest_proxy.core.errors import InvalidRequest, UpstreamTimeout, UpstreamUnavailable

logger = logging.getLogger(__name__)

HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}

# Client request headers forwarded upstream
PASS_THROUGH = (
    "range",
    "user-agent",
    "accept",
    "accept-language",
    "referer",
    "origin",
    "authorization",
    "cookie",
)

# Connection-level failures worth a second attempt; read timeouts are not retried
RETRYABLE = (httpx.ConnectError, httpx.ConnectTimeout, httpx.RemoteProtocolError)


def forward_headers(request_headers: Mapping[str, str]) -> Dict[str, str]:
    return {h: request_headers[h] for h in PASS_THROUGH if request_headers.get(h)}


def response_headers(upstream_headers: httpx.Headers) -> Dict[str, str]:
    """Headers to mirror back to the client for a decoded upstream body."""
    headers = {k: v for k, v in upstream_headers.items() if k.lower() not in HOP_BY_HOP}
    # httpx hands us the decoded body, so the encoding and length no longer apply
    if "content-encoding" in upstream_headers:
        headers.pop("content-encoding", None)
        headers.pop("content-length", None)
    return headers


@dataclass
class FetchedDocument:
    url: str
    body: bytes
    content_type: str


class UpstreamClient:
    """Shared httpx client for everything the proxy fetches upstream."""

    def __init__(
        self,
        timeout: float = 10.0,
        retries: int = 2,
        retry_wait: float = 0.3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.retries = max(1, retries)
        self.retry_wait = retry_wait
        self._client = httpx.AsyncClient(timeout=timeout, follow_redirects=True, transport=transport)

    def _retrying(self, attempts: int) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self.retry_wait, min=self.retry_wait),
            retry=retry_if_exception_type(RETRYABLE),
            reraise=True,
        )

    async def open(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        content: Optional[AsyncIterator[bytes]] = None,
    ) -> httpx.Response:
        """
        Send a request and return the response with its body still unread.

        The caller owns the response and must ``aclose()`` it. A streamed
        request body cannot be replayed, so requests carrying one are sent once.
        """
        attempts = self.retries if content is None else 1
        try:
            async for attempt in self._retrying(attempts):
                with attempt:
                    request = self._client.build_request(method, url, headers=headers, content=content)
                    response = await self._client.send(request, stream=True)
        except httpx.InvalidURL as e:
            raise InvalidRequest(f"Invalid target URL: {e}")
        except httpx.TimeoutException as e:
            logger.error(f"Upstream timeout for {url}: {e!r}")
            raise UpstreamTimeout(f"Upstream timed out: {url}")
        except httpx.HTTPError as e:
            logger.error(f"Upstream fetch failed for {url}: {e!r}")
            raise UpstreamUnavailable(f"Upstream fetch failed: {e}")

        if response.status_code >= 400:
            await response.aclose()
            logger.warning(f"Upstream {url} answered {response.status_code}")
            raise UpstreamUnavailable(
                f"Upstream returned HTTP {response.status_code}",
                upstream_status=response.status_code,
            )
        return response

    async def fetch(self, url: str, headers: Optional[Dict[str, str]] = None) -> FetchedDocument:
        """Fetch a whole document (manifests). ``url`` of the result is the post-redirect URL."""
        response = await self.open(url, headers=headers)
        try:
            body = await response.aread()
        except httpx.TimeoutException:
            raise UpstreamTimeout(f"Upstream timed out while reading {url}")
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Upstream body read failed: {e}")
        finally:
            await response.aclose()

        return FetchedDocument(
            url=str(response.url),
            body=body,
            content_type=response.headers.get("content-type", ""),
        )

    async def aclose(self):
        await self._client.aclose()
