"""Per-token model prices looked up from the OpenRouter model catalog."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from .config import DEFAULT_OPENROUTER_BASE_URL

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    """USD per token for prompt and completion tokens."""

    prompt_price: float = 0.0
    completion_price: float = 0.0


ZERO_PRICING = ModelPricing()


class PricingResolver:
    """Resolves and memoizes model prices.

    The cache lives for the lifetime of the resolver and is never evicted;
    the number of distinct model ids a process talks to is small. Failed
    lookups are not cached, so a later call retries the catalog.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_OPENROUTER_BASE_URL,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._timeout = timeout
        self._cache: dict[str, ModelPricing] = {}

    def cached(self, model_id: str) -> ModelPricing | None:
        return self._cache.get(model_id)

    async def resolve(self, model_id: str, api_key: str) -> ModelPricing:
        """Return prices for ``model_id``; zero prices when they cannot be determined."""
        if model_id in self._cache:
            return self._cache[model_id]

        try:
            catalog = await self._fetch_catalog(api_key)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Error fetching model pricing: %s", exc)
            return ZERO_PRICING

        entry = next(
            (m for m in catalog if isinstance(m, dict) and m.get("id") == model_id),
            None,
        )
        if entry is None:
            logger.warning("Model %s not found in pricing data", model_id)
            return ZERO_PRICING

        pricing = entry.get("pricing") or {}
        try:
            result = ModelPricing(
                prompt_price=float(pricing.get("prompt") or 0),
                completion_price=float(pricing.get("completion") or 0),
            )
        except (TypeError, ValueError, AttributeError):
            logger.warning("Unreadable pricing for model %s: %r", model_id, pricing)
            return ZERO_PRICING

        self._cache[model_id] = result
        return result

    async def _fetch_catalog(self, api_key: str) -> list:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        url = f"{self.base_url}/models"
        if self._client is not None:
            response = await self._client.get(url, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(url, headers=headers)
        response.raise_for_status()
        payload = response.json()
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise ValueError("model catalog payload has no data list")
        return data


__all__ = ["ModelPricing", "PricingResolver", "ZERO_PRICING"]
