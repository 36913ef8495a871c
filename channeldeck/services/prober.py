"""
Connectivity probing for channel stream URLs.

A probe is metadata only: HEAD first, and for servers that refuse HEAD a
streamed ``GET`` with ``Range: bytes=0-0`` whose body is never read. Failure
to reach a stream is an ordinary outcome, so ``probe`` never raises; every
path returns a ``TestResult``. There are no retries here.
"""
import asyncio
import logging
import time
from typing import Optional

import httpx

from channeldeck.config import get_settings
from channeldeck.models.channel import TestResult, url_problem

logger = logging.getLogger(__name__)

# Hints in connect errors that point at name resolution rather than the server
DNS_HINTS = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "getaddrinfo",
    "no address associated",
)


class ChannelProber:
    """Classifies stream reachability: working iff 200 <= status < 400."""

    # Statuses that mean "HEAD not supported", retried as a ranged GET
    FALLBACK_STATUSES = (405, 501)

    def __init__(
        self,
        timeout_ms: Optional[int] = None,
        max_redirects: Optional[int] = None,
        user_agent: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.timeout_ms = timeout_ms or settings.probe_timeout_ms
        self.max_redirects = settings.probe_max_redirects if max_redirects is None else max_redirects
        self.headers = {
            "User-Agent": user_agent or settings.probe_user_agent,
            "Accept": "*/*",
        }
        self._transport = transport

    async def probe(self, url: str, timeout_ms: Optional[int] = None) -> TestResult:
        """Probe ``url`` and report whether the stream answers."""
        timeout_ms = timeout_ms or self.timeout_ms

        problem = url_problem(url)
        if problem is None and not url.strip().lower().startswith(("http://", "https://")):
            problem = "Only http and https URLs can be probed"
        if problem:
            return TestResult(
                working=False,
                response_time_ms=0,
                error_reason="invalid_url",
                message=f"Invalid URL - {problem}",
            )

        start = time.monotonic()
        try:
            response = await asyncio.wait_for(self._request(url.strip(), timeout_ms), timeout_ms / 1000)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return TestResult(
                working=False,
                response_time_ms=timeout_ms,
                error_reason="timeout",
                message=f"Timeout - no response within {timeout_ms} ms",
            )
        except httpx.TooManyRedirects:
            return self._failure(start, "too_many_redirects", f"More than {self.max_redirects} redirects")
        except httpx.ConnectError as e:
            detail = str(e) or type(e).__name__
            if any(hint in detail.lower() for hint in DNS_HINTS):
                return self._failure(start, "dns", f"DNS resolution failed - {detail}")
            if "refused" in detail.lower():
                return self._failure(start, "connection_refused", "Connection refused - stream server is down")
            return self._failure(start, "connection_failed", f"Connection failed - {detail}")
        except httpx.InvalidURL as e:
            return self._failure(start, "invalid_url", f"Invalid URL - {e}")
        except httpx.HTTPError as e:
            detail = str(e) or type(e).__name__
            return self._failure(start, "network", f"Network error - {detail[:100]}")

        elapsed_ms = int((time.monotonic() - start) * 1000)
        status = response.status_code
        working = 200 <= status < 400
        logger.debug(f"Probe {url} -> HTTP {status} in {elapsed_ms} ms")

        return TestResult(
            working=working,
            status_code=status,
            response_time_ms=elapsed_ms,
            error_reason=None if working else "http_status",
            message="Stream is accessible" if working else f"HTTP {status}",
            content_type=response.headers.get("content-type"),
            final_url=str(response.url),
        )

    async def _request(self, url: str, timeout_ms: int) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_ms / 1000),
            follow_redirects=True,
            max_redirects=self.max_redirects,
            headers=self.headers,
            transport=self._transport,
            verify=False,  # Plenty of stream hosts have bad certs
        ) as client:
            response = await client.head(url)

            # Some servers don't support HEAD
            if response.status_code in self.FALLBACK_STATUSES:
                async with client.stream("GET", url, headers={"Range": "bytes=0-0"}) as streamed:
                    return streamed
            return response

    @staticmethod
    def _failure(start: float, reason: str, message: str) -> TestResult:
        return TestResult(
            working=False,
            response_time_ms=int((time.monotonic() - start) * 1000),
            error_reason=reason,
            message=message,
        )
