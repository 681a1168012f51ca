"""Single-record transaction fetch from the payment provider."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from ..config import RecoverySettings
from ..errors import ProviderFetchError

logger = logging.getLogger(__name__)


def _extract_transaction(data: Any) -> Optional[Dict[str, Any]]:
    """Pull one transaction object out of the provider's response envelopes."""
    if not isinstance(data, dict):
        return None
    transactions = data.get("transactions")
    if isinstance(transactions, list):
        return transactions[0] if transactions and isinstance(transactions[0], dict) else None
    candidate = data.get("transaction")
    if isinstance(candidate, dict):
        return candidate
    nested = data.get("data")
    if isinstance(nested, dict):
        return _extract_transaction(nested)
    return data if "uid" in data else None


class ProviderClientBase(ABC):
    """Base class for provider clients used by recovery.

    Implementations return the record wrapped as ``{"transaction": {...}}``,
    the shape the normalizer expects for API records, or ``None`` when the
    provider does not know the record.
    """

    @abstractmethod
    async def fetch_by_uid(self, uid: str) -> Optional[Dict[str, Any]]:
        """Fetch a transaction by provider UID."""
        raise NotImplementedError

    @abstractmethod
    async def fetch_by_tracking_id(self, tracking_id: str) -> Optional[Dict[str, Any]]:
        """Fetch the first transaction carrying a merchant tracking id."""
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release network resources."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


class BepaidClient(ProviderClientBase):
    """bePaid gateway client with HTTP basic auth (shop id / secret key)."""

    def __init__(
        self,
        shop_id: str,
        secret_key: str,
        base_url: str = "https://gateway.bepaid.by",
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the client.

        Args:
            shop_id: bePaid shop id, used as the basic-auth user.
            secret_key: bePaid secret key, used as the basic-auth password.
            base_url: Gateway base URL.
            timeout: Request timeout in seconds.
            http_client: Pre-built client (tests pass one with a mock transport).
        """
        if not shop_id or not secret_key:
            raise ValueError("BEPAID_SHOP_ID and BEPAID_SECRET_KEY must be provided")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._base_url = base_url.rstrip("/")
        self._auth = httpx.BasicAuth(shop_id, secret_key)
        self._headers = {"Accept": "application/json", "X-Api-Version": "3"}

    async def _get(self, path: str, key: str) -> Optional[Dict[str, Any]]:
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.get(url, auth=self._auth, headers=self._headers)
        except httpx.TimeoutException as e:
            logger.error(f"Provider request timed out for {key}: {e}")
            raise ProviderFetchError(f"timeout fetching {key}", uid=key) from e
        except httpx.RequestError as e:
            logger.error(f"Provider request failed for {key}: {e}")
            raise ProviderFetchError(f"request error fetching {key}: {e}", uid=key) from e

        if response.status_code == 404:
            logger.debug(f"Provider has no record for {key}")
            return None
        if response.status_code >= 400:
            retryable = response.status_code >= 500 or response.status_code == 429
            raise ProviderFetchError(
                f"provider returned HTTP {response.status_code} for {key}",
                uid=key,
                status_code=response.status_code,
                retryable=retryable,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderFetchError(
                f"provider returned a non-JSON body for {key}",
                uid=key,
                status_code=response.status_code,
                retryable=False,
            ) from e

        transaction = _extract_transaction(data)
        if transaction is None:
            return None
        return {"transaction": transaction}

    async def fetch_by_uid(self, uid: str) -> Optional[Dict[str, Any]]:
        return await self._get(f"/transactions/{uid}", uid)

    async def fetch_by_tracking_id(self, tracking_id: str) -> Optional[Dict[str, Any]]:
        return await self._get(f"/v2/transactions/tracking_id/{tracking_id}", tracking_id)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class StaticProviderClient(ProviderClientBase):
    """In-memory provider used for local runs without credentials.

    Records are raw provider transaction objects; lookups never fail.
    """

    def __init__(self, records: Optional[List[Dict[str, Any]]] = None):
        self._records = list(records or [])

    def add(self, record: Dict[str, Any]) -> None:
        self._records.append(record)

    async def fetch_by_uid(self, uid: str) -> Optional[Dict[str, Any]]:
        for record in self._records:
            if str(record.get("uid", "")).lower() == uid.lower():
                return {"transaction": record}
        return None

    async def fetch_by_tracking_id(self, tracking_id: str) -> Optional[Dict[str, Any]]:
        for record in self._records:
            if record.get("tracking_id") == tracking_id:
                return {"transaction": record}
        return None


def get_provider_client(settings: Optional[RecoverySettings] = None) -> ProviderClientBase:
    """Factory function to build the provider client from settings.

    Args:
        settings: Runtime settings; read from the environment if omitted.

    Returns:
        A BepaidClient when credentials are configured, otherwise an empty
        StaticProviderClient.
    """
    settings = settings or RecoverySettings.from_env()
    if settings.provider_shop_id and settings.provider_secret_key:
        return BepaidClient(
            shop_id=settings.provider_shop_id,
            secret_key=settings.provider_secret_key,
            base_url=settings.provider_api_url,
            timeout=settings.provider_timeout,
        )
    logger.warning("bePaid credentials are not configured; provider lookups will find nothing")
    return StaticProviderClient()
