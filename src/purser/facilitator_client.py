"""
HTTP client for x402 facilitators with primary/fallback failover.

Each endpoint gets ``MAX_RETRIES`` retries with linear backoff on transport
errors and 5xx responses. A 4xx is a definitive rejection: it is neither
retried nor sent to the fallback.

``/settle`` is not idempotent. Once a settle request may have been
delivered (a read timeout, a dropped connection, a 5xx, an unreadable 200)
it is never re-sent; ``SettlementUnknownError`` is raised instead. A settle
that could not connect still fails over.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

import httpx

from .errors import FacilitatorError, SettlementUnknownError

logger = logging.getLogger(__name__)

DEFAULT_FACILITATOR_URL = "https://x402.org/facilitator"
DEFAULT_FALLBACK_URL = "https://facilitator.payai.network"
DEFAULT_TIMEOUT_SECONDS = 5.0
MAX_RETRIES = 2
BACKOFF_SECONDS = 0.5

# the request never left the client
_NOT_SENT = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


class _Final(Exception):
    def __init__(self, error: FacilitatorError):
        self.error = error


class FacilitatorClient:
    """Calls ``/verify``, ``/settle`` and ``/supported`` on a facilitator."""

    def __init__(
        self,
        primary_url: Optional[str] = None,
        fallback_url: Optional[str] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        http: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.primary_url = (primary_url or DEFAULT_FACILITATOR_URL).rstrip("/")
        self.fallback_url = (fallback_url or DEFAULT_FALLBACK_URL).rstrip("/")
        self._http = http or httpx.Client(timeout=timeout_seconds)
        self._sleep = sleep

    def verify(self, payment_payload: dict, requirements: dict) -> dict:
        return self._request_with_fallback("POST", "/verify", _body(payment_payload, requirements))

    def settle(self, payment_payload: dict, requirements: dict) -> dict:
        """
        Settle a payment. Raises ``FacilitatorError`` unless the facilitator
        reports success, and ``SettlementUnknownError`` when the outcome
        cannot be known.
        """
        result = self._request_with_fallback(
            "POST", "/settle", _body(payment_payload, requirements), idempotent=False
        )
        if not result.get("success"):
            reason = result.get("errorReason") or "unknown error"
            raise FacilitatorError(f"Settlement failed: {reason}")
        return result

    def supported(self) -> dict:
        return self._request_with_fallback("GET", "/supported", None)

    def _request_with_fallback(
        self,
        method: str,
        path: str,
        body: Optional[dict],
        idempotent: bool = True,
    ) -> dict:
        errors = {}
        for label, base_url in (("primary", self.primary_url), ("fallback", self.fallback_url)):
            try:
                return self._request_with_retries(method, f"{base_url}{path}", body, idempotent)
            except _Final as r:
                raise r.error from None
            except FacilitatorError as e:
                logger.warning("Facilitator %s (%s) failed: %s", label, base_url, e.message)
                errors[label] = e.message
            if self.fallback_url == self.primary_url:
                break

        raise FacilitatorError(
            "All facilitators failed. "
            + " ".join(f"{label}: {message}." for label, message in errors.items())
        )

    def _request_with_retries(
        self,
        method: str,
        url: str,
        body: Optional[dict],
        idempotent: bool,
    ) -> dict:
        last_error = "no attempts made"
        for attempt in range(MAX_RETRIES + 1):
            if attempt:
                self._sleep(BACKOFF_SECONDS * attempt)
            try:
                response = self._http.request(method, url, json=body)
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"
                if not idempotent and not isinstance(e, _NOT_SENT):
                    raise _Final(SettlementUnknownError(f"No response from {url}: {last_error}"))
                logger.info("Facilitator request to %s failed (attempt %d): %s", url, attempt + 1, last_error)
                continue

            if 400 <= response.status_code < 500:
                raise _Final(
                    FacilitatorError(
                        f"Facilitator rejected request ({response.status_code}): {_reason(response)}",
                        status_code=response.status_code,
                    )
                )
            if response.status_code >= 500:
                last_error = f"HTTP {response.status_code}"
                if not idempotent:
                    raise _Final(SettlementUnknownError(f"Settle request to {url} failed with {last_error}"))
                continue

            try:
                data = response.json()
            except ValueError:
                data = None
            if not isinstance(data, dict):
                last_error = "invalid JSON response"
                if not idempotent:
                    raise _Final(SettlementUnknownError(f"Unreadable settle response from {url}"))
                continue
            return data

        raise FacilitatorError(last_error)

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def _body(payment_payload: dict, requirements: dict) -> dict:
    return {"paymentPayload": payment_payload, "paymentRequirements": requirements}


def _reason(response: httpx.Response) -> str:
    try:
        data: Any = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        for key in ("invalidReason", "errorReason", "message", "error"):
            if data.get(key):
                return str(data[key])
    return response.text[:200]
