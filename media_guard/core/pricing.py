"""
Pricing calculations and rate management.

Resolves unit prices per provider through a name-keyed registry and
computes generation costs. A failed lookup yields a PricingResult carrying
a PricingUnavailableError instead of a zero cost.
"""

import logging
import time
from dataclasses import dataclass
from decimal import ROUND_UP, Decimal
from enum import Enum
from typing import Dict, Optional, Protocol

import httpx

from media_guard.storage.models import GenerationMetrics, ResourceType

logger = logging.getLogger(__name__)

FAL_API_BASE = "https://api.fal.ai"
PRICE_CACHE_TTL = 24 * 60 * 60

DEFAULT_VIDEO_SECONDS = Decimal("5")
DEFAULT_AUDIO_SECONDS = Decimal("30")
DEFAULT_CHARACTERS = Decimal("100")


class PricingUnit(str, Enum):
    """Billing unit of a price."""
    IMAGE = "image"
    SECOND = "second"
    MINUTE = "minute"
    THOUSAND_CHARS = "1k_chars"


class PricingUnavailableError(Exception):
    """Price for a provider/model could not be determined."""

    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        super().__init__(f"Pricing unavailable from {provider}: {reason}")


@dataclass(frozen=True)
class PriceInfo:
    """Unit price for a model."""
    unit: PricingUnit
    price: Decimal


@dataclass(frozen=True)
class PricingResult:
    """Outcome of a cost lookup: a cost, or the reason there is none."""
    price_info: Optional[PriceInfo] = None
    cost: Optional[float] = None
    error: Optional[PricingUnavailableError] = None


def calculate_cost(price_info: PriceInfo, metrics: GenerationMetrics) -> float:
    """Calculate total cost for a generation with conservative rounding.

    Missing quantities fall back to typical values: 5 seconds of video,
    30 seconds of audio, 100 characters of speech.

    Args:
        price_info: Unit price
        metrics: Generation metrics

    Returns:
        Cost in USD rounded UP to 6 decimal places
    """
    count = Decimal(metrics.count)
    seconds = (
        Decimal(str(metrics.duration_seconds))
        if metrics.duration_seconds is not None
        else None
    )

    if price_info.unit == PricingUnit.IMAGE:
        quantity = count
    elif price_info.unit == PricingUnit.SECOND:
        quantity = (seconds if seconds is not None else DEFAULT_VIDEO_SECONDS) * count
    elif price_info.unit == PricingUnit.MINUTE:
        quantity = (seconds if seconds is not None else DEFAULT_AUDIO_SECONDS) / Decimal("60") * count
    else:
        characters = (
            Decimal(metrics.character_count)
            if metrics.character_count is not None
            else DEFAULT_CHARACTERS
        )
        quantity = characters / Decimal("1000")

    total_cost = price_info.price * quantity
    return float(total_cost.quantize(Decimal("0.000001"), rounding=ROUND_UP))


class PriceLookup(Protocol):
    """Per-provider pricing capability."""
    provider: str

    async def get_price(self, model_id: str, resource_type: ResourceType) -> Optional[PriceInfo]: ...

    async def calculate_cost(self, metrics: GenerationMetrics) -> PricingResult: ...


class StaticPricing:
    """Pricing from a fixed table.

    Table keys match when they appear in the (lowercased) model id; per
    resource type defaults apply when nothing matches.
    """

    def __init__(
        self,
        provider: str,
        prices: Dict[str, PriceInfo],
        defaults: Optional[Dict[ResourceType, PriceInfo]] = None,
    ):
        self.provider = provider
        self.prices = prices
        self.defaults = defaults or {}

    def _lookup(self, model_id: str, resource_type: ResourceType) -> Optional[PriceInfo]:
        model_lower = model_id.lower()
        for key, info in self.prices.items():
            if key.lower() in model_lower:
                return info
        return self.defaults.get(resource_type)

    async def get_price(self, model_id: str, resource_type: ResourceType) -> Optional[PriceInfo]:
        return self._lookup(model_id, resource_type)

    async def calculate_cost(self, metrics: GenerationMetrics) -> PricingResult:
        price_info = self._lookup(metrics.model_id, metrics.resource_type)
        if price_info is None:
            return PricingResult(
                error=PricingUnavailableError(self.provider, f"Unknown model: {metrics.model_id}")
            )
        return PricingResult(price_info=price_info, cost=calculate_cost(price_info, metrics))


# ElevenLabs publishes prices but has no pricing API
ELEVENLABS_PRICES = {
    "eleven_multilingual_v2": PriceInfo(PricingUnit.THOUSAND_CHARS, Decimal("0.30")),
    "eleven_turbo_v2": PriceInfo(PricingUnit.THOUSAND_CHARS, Decimal("0.15")),
    "eleven_monolingual_v1": PriceInfo(PricingUnit.THOUSAND_CHARS, Decimal("0.30")),
    "music": PriceInfo(PricingUnit.MINUTE, Decimal("0.20")),
}

ELEVENLABS_DEFAULTS = {
    ResourceType.SPEECH: PriceInfo(PricingUnit.THOUSAND_CHARS, Decimal("0.20")),
    ResourceType.MUSIC: PriceInfo(PricingUnit.MINUTE, Decimal("0.20")),
}


def elevenlabs_pricing() -> StaticPricing:
    return StaticPricing("elevenlabs", ELEVENLABS_PRICES, ELEVENLABS_DEFAULTS)


# Friendly model names -> fal endpoint ids
MODEL_TO_ENDPOINT = {
    "flux-schnell": "fal-ai/flux/schnell",
    "flux-dev": "fal-ai/flux/dev",
    "flux-pro": "fal-ai/flux-pro/v1.1",
    "recraft-v3": "fal-ai/recraft/v3/text-to-image",
    "nano-banana-pro": "fal-ai/nano-banana-pro",
    "seedream": "fal-ai/bytedance/seedream/v4.5",
    "wan-2.5": "fal-ai/wan-25/text-to-video",
    "kling-v2.6": "fal-ai/kling-video/v2.6/pro/text-to-video",
    "kling-v2.5": "fal-ai/kling-video/v2.5-turbo/pro/text-to-video",
    "minimax": "fal-ai/minimax-video/text-to-video",
    "veo": "fal-ai/veo-3",
    "luma": "fal-ai/luma-dream-machine",
}


def resolve_endpoint_id(model_id: str) -> str:
    """Resolve a model id to a fal endpoint id."""
    if "/" in model_id:
        return model_id
    return MODEL_TO_ENDPOINT.get(model_id.lower(), f"fal-ai/{model_id}")


def map_fal_unit(unit: str) -> PricingUnit:
    normalized = unit.lower()
    if normalized in ("second", "seconds", "sec"):
        return PricingUnit.SECOND
    if normalized in ("minute", "minutes", "min"):
        return PricingUnit.MINUTE
    if normalized in ("1k_chars", "characters"):
        return PricingUnit.THOUSAND_CHARS
    return PricingUnit.IMAGE


class FalPricing:
    """
    fal.ai pricing from the ``/v1/models/pricing`` API.

    Prices are cached in memory for 24 hours. Lookup failures are returned
    as PricingUnavailableError, never raised.
    """

    provider = "fal"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = FAL_API_BASE,
        http_client: Optional[httpx.AsyncClient] = None,
        clock=time.time,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self._http_client = http_client
        self._clock = clock
        self._prices: Dict[str, tuple] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=5.0)
        return self._http_client

    async def close(self):
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def fetch_price(self, endpoint_id: str) -> PriceInfo:
        """Fetch the unit price for an endpoint.

        Raises:
            PricingUnavailableError: If no price can be obtained
        """
        cached = self._prices.get(endpoint_id)
        if cached and self._clock() - cached[1] < PRICE_CACHE_TTL:
            return cached[0]

        if not self.api_key:
            raise PricingUnavailableError(self.provider, "No API key configured (FAL_KEY or FAL_API_KEY)")

        client = await self._get_client()
        try:
            response = await client.get(
                f"{self.base_url}/v1/models/pricing",
                params={"endpoint_id": endpoint_id},
                headers={"Authorization": f"Key {self.api_key}"},
            )
        except httpx.HTTPError as e:
            raise PricingUnavailableError(self.provider, f"{type(e).__name__}: {e}")

        if response.status_code != 200:
            raise PricingUnavailableError(
                self.provider, f"API returned {response.status_code}: {response.text[:200]}"
            )

        try:
            prices = response.json().get("prices") or []
            entry = prices[0]
            info = PriceInfo(
                unit=map_fal_unit(str(entry.get("unit", "image"))),
                price=Decimal(str(entry["unit_price"])),
            )
        except (ValueError, KeyError, IndexError, AttributeError, ArithmeticError):
            raise PricingUnavailableError(self.provider, f"No pricing data for endpoint: {endpoint_id}")

        self._prices[endpoint_id] = (info, self._clock())
        return info

    async def get_price(self, model_id: str, resource_type: ResourceType) -> Optional[PriceInfo]:
        try:
            return await self.fetch_price(resolve_endpoint_id(model_id))
        except PricingUnavailableError:
            return None

    async def calculate_cost(self, metrics: GenerationMetrics) -> PricingResult:
        try:
            price_info = await self.fetch_price(resolve_endpoint_id(metrics.model_id))
        except PricingUnavailableError as e:
            return PricingResult(error=e)
        return PricingResult(price_info=price_info, cost=calculate_cost(price_info, metrics))


class PricingRegistry:
    """Registry of price lookups keyed by provider name."""

    def __init__(self):
        self._providers: Dict[str, PriceLookup] = {}

    def register(self, pricing: PriceLookup) -> None:
        self._providers[pricing.provider] = pricing

    def get(self, provider: str) -> Optional[PriceLookup]:
        return self._providers.get(provider)

    async def get_price(
        self,
        provider: str,
        model_id: str,
        resource_type: ResourceType
    ) -> Optional[PriceInfo]:
        lookup = self._providers.get(provider)
        if lookup is None:
            return None
        return await lookup.get_price(model_id, resource_type)

    async def calculate_cost(self, metrics: GenerationMetrics) -> PricingResult:
        lookup = self._providers.get(metrics.provider)
        if lookup is None:
            return PricingResult(error=PricingUnavailableError(metrics.provider, "Unknown provider"))
        return await lookup.calculate_cost(metrics)

    async def close(self):
        """Close lookups that hold network clients."""
        for lookup in self._providers.values():
            close = getattr(lookup, "close", None)
            if close is not None:
                await close()


def default_registry(fal_key: Optional[str] = None) -> PricingRegistry:
    """Registry with the built-in providers."""
    registry = PricingRegistry()
    registry.register(FalPricing(api_key=fal_key))
    registry.register(elevenlabs_pricing())
    return registry


def format_cost(cost: Optional[float]) -> str:
    """Format a cost for display; unknown costs show as "unknown"."""
    if cost is None:
        return "unknown"
    if cost == 0:
        return "$0.00"
    if cost < 0.01:
        return f"${cost:.3f}"
    return f"${cost:,.2f}"
