"""
HTTP client for the gym backend, used by the checkout flow and other callers
outside the web app.

Every call carries a timeout. Only idempotent reads are retried; order
creation and verification go out exactly once.
"""

import logging
from typing import Any, Dict, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from client_cache import CacheService, RequestDeduplicator
from config import settings
from payment_errors import NetworkTimeoutError

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (httpx.TimeoutException, httpx.TransportError)


class ApiError(Exception):
    """Non-2xx answer from the backend, carrying its user-safe message"""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"{status_code}: {message}")


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return f"Request failed ({response.status_code})"
    return data.get("error") or data.get("detail") or f"Request failed ({response.status_code})"


class GymApiClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        cache: Optional[CacheService] = None,
        deduplicator: Optional[RequestDeduplicator] = None,
        api_key: Optional[str] = None,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.BACKEND_URL).rstrip("/")
        self.cache = cache or CacheService(ttl_seconds=settings.CACHE_TTL_SECONDS)
        self.deduplicator = deduplicator or RequestDeduplicator()
        self.token = token
        self.headers = {"Content-Type": "application/json"}
        api_key = api_key if api_key is not None else settings.PUBLIC_API_KEY
        if api_key:
            self.headers["apikey"] = api_key
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            transport=transport,
            timeout=settings.DEFAULT_TIMEOUT_SECONDS,
        )

    async def aclose(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = dict(self.headers)
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    @retry(
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        stop=stop_after_attempt(settings.AUTH_RETRY_ATTEMPTS + 1),
        wait=wait_exponential(multiplier=0.5, max=4),
        reraise=True,
    )
    async def _get_json(self, path: str, params: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        response = await self._client.get(path, params=params, headers=self._headers(), timeout=timeout)
        if response.status_code >= 400:
            raise ApiError(response.status_code, _error_message(response))
        return response.json()

    async def _post_json(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._client.post(path, json=payload, headers=self._headers())
        except httpx.TimeoutException:
            raise NetworkTimeoutError()
        except httpx.TransportError:
            raise NetworkTimeoutError("Network error. Please check your connection and try again.")
        if response.status_code >= 400:
            raise ApiError(response.status_code, _error_message(response))
        return response.json()

    async def get_public_data(self, action: str, branch_id: int) -> Dict[str, Any]:
        """Cached, deduplicated read of registration page data"""
        key = f"public:{branch_id}:{action}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        async def fetch():
            data = await self._get_json(
                "/functions/public-data",
                {"action": action, "branchId": branch_id},
                settings.SHORT_TIMEOUT_SECONDS,
            )
            self.cache.set(key, data)
            return data

        return await self.deduplicator.run(key, fetch)

    async def check_access(self, route: str) -> Dict[str, Any]:
        """
        Gate decision for a route. Timeouts come back as a network_error
        decision rather than a denial.
        """
        key = f"access:{route}"
        try:
            return await self.deduplicator.run(
                key,
                lambda: self._get_json("/api/access/check", {"route": route}, settings.AUTH_TIMEOUT_SECONDS),
            )
        except RETRYABLE_ERRORS:
            logger.warning(f"Access check for {route} timed out after retries")
            return {
                "route": route,
                "state": "network_error",
                "reason": None,
                "message": NetworkTimeoutError.default_message,
            }

    async def create_order(self, intent: Dict[str, Any]) -> Dict[str, Any]:
        return await self._post_json("/functions/create-order", intent)

    async def verify_payment(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._post_json("/functions/verify-payment", payload)
