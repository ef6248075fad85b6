from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, List, Optional, Sequence
from urllib.parse import quote

import httpx
from openai import AsyncOpenAI

from config import EnrichmentConfig, PricingPolicy
from models import InvoiceItem, ItemType

__all__ = [
    "PriceEstimateError",
    "ImageLookupError",
    "PriceEstimator",
    "ImageProvider",
    "UnsplashImageSearch",
    "PexelsImageSearch",
    "ImageFinder",
    "Enricher",
    "placeholder_image_url",
    "parse_price_text",
]

ENRICH_LOG = logging.getLogger("invoice_agent.enrich")

PLACEHOLDER_IMAGE = (
    "https://images.unsplash.com/photo-1486262715619-67b85e0b08d3"
    "?w=200&h=200&fit=crop&auto=format&q=80&text={name}"
)


class PriceEstimateError(RuntimeError):
    pass


class ImageLookupError(RuntimeError):
    pass


def placeholder_image_url(name: str) -> str:
    return PLACEHOLDER_IMAGE.format(name=quote(name, safe=""))


_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")


def parse_price_text(text: Optional[str]) -> Optional[float]:
    """Lenient: first number in the reply, thousands separators ignored."""
    if not text:
        return None
    match = _NUMBER_RE.search(text.replace(",", ""))
    if not match:
        return None
    value = float(match.group(0))
    return value if value > 0 else None


# ---------------------------------------------------------------------------
# Price


class PriceEstimator:
    """Static table first, then a one-number chat completion."""

    def __init__(
        self,
        policy: Optional[PricingPolicy] = None,
        config: Optional[EnrichmentConfig] = None,
        *,
        client: Optional[Any] = None,
    ):
        self.policy = policy or PricingPolicy()
        self.cfg = config or EnrichmentConfig()
        self._client = client

    def needs_price(self, item: InvoiceItem) -> bool:
        return item.price <= 0 or item.price > self.policy.price_ceiling

    def _ensure_client(self) -> Optional[Any]:
        if self._client is None and self.cfg.openai_api_key:
            self._client = AsyncOpenAI(api_key=self.cfg.openai_api_key, timeout=self.cfg.timeout_s)
        return self._client

    async def enrich_price(self, name: str, category: Optional[str] = None) -> Optional[float]:
        table_price = self.policy.table_price(name)
        if table_price is not None:
            return table_price

        client = self._ensure_client()
        if client is None:
            return None

        prompt = (
            f"What is the typical retail price for a {name}"
            f"{f' ({category})' if category else ''} for a car? "
            "Return only the numeric price, no currency symbols or text."
        )
        try:
            response = await client.chat.completions.create(
                model=self.cfg.price_model,
                messages=[
                    {
                        "role": "system",
                        "content": "You are a pricing assistant. Return only a numeric price estimate in USD for automotive parts.",
                    },
                    {"role": "user", "content": prompt},
                ],
                temperature=0.3,
            )
        except Exception as exc:  # noqa: BLE001 - openai raises several transport types
            raise PriceEstimateError(f"price estimate failed for {name}: {exc}") from exc

        content = response.choices[0].message.content if response.choices else None
        price = parse_price_text(content)
        if price is None:
            raise PriceEstimateError(f"non-numeric price estimate for {name}: {content!r}")
        return round(price, 2)


# ---------------------------------------------------------------------------
# Images


class ImageProvider:
    name = "provider"
    endpoint = ""

    def __init__(self, api_key: str, client: httpx.AsyncClient):
        self.api_key = api_key
        self.client = client

    def queries(self, part_name: str, category: Optional[str]) -> List[str]:
        return [f"{part_name} automotive part"]

    async def search(self, query: str) -> Optional[str]:
        raise NotImplementedError

    async def find(self, part_name: str, category: Optional[str]) -> Optional[str]:
        for query in self.queries(part_name, category):
            url = await self.search(query)
            if url:
                return url
        return None


class UnsplashImageSearch(ImageProvider):
    name = "unsplash"
    endpoint = "https://api.unsplash.com/search/photos"

    def queries(self, part_name: str, category: Optional[str]) -> List[str]:
        return [
            f"{part_name} automotive part isolated",
            f"{part_name} car part replacement",
            f"{category + ' ' if category else ''}{part_name} auto part",
            f"{part_name} vehicle component",
        ]

    async def search(self, query: str) -> Optional[str]:
        response = await self.client.get(
            self.endpoint,
            params={"query": query, "per_page": 1, "orientation": "squarish"},
            headers={"Authorization": f"Client-ID {self.api_key}"},
        )
        response.raise_for_status()
        results = response.json().get("results") or []
        if not results:
            return None
        urls = results[0].get("urls") or {}
        return urls.get("regular") or urls.get("small") or urls.get("thumb")


class PexelsImageSearch(ImageProvider):
    name = "pexels"
    endpoint = "https://api.pexels.com/v1/search"

    def queries(self, part_name: str, category: Optional[str]) -> List[str]:
        queries = [f"{part_name} automotive part"]
        if category:
            queries.append(f"{category} {part_name} car")
        queries.append(f"{part_name} car")
        return queries

    async def search(self, query: str) -> Optional[str]:
        response = await self.client.get(
            self.endpoint,
            params={"query": query, "per_page": 1, "orientation": "square"},
            headers={"Authorization": self.api_key},
        )
        response.raise_for_status()
        photos = response.json().get("photos") or []
        if not photos:
            return None
        src = photos[0].get("src") or {}
        return src.get("medium") or src.get("small")


class ImageFinder:
    """Tries providers in order; placeholder when nobody had a picture."""

    def __init__(self, providers: Sequence[ImageProvider]):
        self.providers = list(providers)

    async def find(self, part_name: str, category: Optional[str] = None) -> str:
        errors: List[str] = []
        for provider in self.providers:
            try:
                url = await provider.find(part_name, category)
            except Exception as exc:  # noqa: BLE001 - malformed bodies raise all sorts
                ENRICH_LOG.warning("%s image lookup failed for %s: %s", provider.name, part_name, exc)
                errors.append(f"{provider.name}: {exc}")
                continue
            if url:
                ENRICH_LOG.info("found image for %s via %s", part_name, provider.name)
                return url
        if self.providers and len(errors) == len(self.providers):
            raise ImageLookupError("; ".join(errors))
        return placeholder_image_url(part_name)


# ---------------------------------------------------------------------------
# Per-item enrichment


class Enricher:
    def __init__(
        self,
        config: Optional[EnrichmentConfig] = None,
        policy: Optional[PricingPolicy] = None,
        *,
        prices: Optional[PriceEstimator] = None,
        images: Optional[ImageFinder] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.cfg = config or EnrichmentConfig.from_env()
        self.policy = policy or PricingPolicy()
        self._client = client
        self._owns_client = client is None and images is None
        self.prices = prices or PriceEstimator(self.policy, self.cfg)
        self.images = images or ImageFinder(self._default_providers())

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.cfg.timeout_s)
        return self._client

    def _default_providers(self) -> List[ImageProvider]:
        providers: List[ImageProvider] = []
        if self.cfg.unsplash_key:
            providers.append(UnsplashImageSearch(self.cfg.unsplash_key, self._http()))
        if self.cfg.pexels_key:
            providers.append(PexelsImageSearch(self.cfg.pexels_key, self._http()))
        if not providers:
            ENRICH_LOG.warning("no image-search keys configured; using placeholder images")
        return providers

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def enrich(self, items: Sequence[InvoiceItem]) -> List[InvoiceItem]:
        """Enrich every part concurrently; one item failing never affects another."""
        results = await asyncio.gather(*(self._enrich_one(item) for item in items), return_exceptions=True)
        enriched: List[InvoiceItem] = []
        for original, result in zip(items, results):
            if isinstance(result, BaseException):
                ENRICH_LOG.warning("enrichment failed for %s: %s", original.name, result)
                enriched.append(original)
            else:
                enriched.append(result)
        return enriched

    async def _enrich_one(self, item: InvoiceItem) -> InvoiceItem:
        if item.type is not ItemType.PART:
            return item

        # price and image are independent; neither failure cancels the other
        updates = {}
        if self.prices.needs_price(item):
            try:
                price = await self.prices.enrich_price(item.name, item.category)
            except PriceEstimateError as exc:
                ENRICH_LOG.warning("%s", exc)
                price = None
            except Exception as exc:  # noqa: BLE001
                ENRICH_LOG.warning("price lookup failed for %s: %s", item.name, exc)
                price = None
            if price and price > 0:
                ENRICH_LOG.info("updated price for %s: $%.2f", item.name, price)
                updates["price"] = price

        if not item.image_url:
            try:
                updates["image_url"] = await self.images.find(item.name, item.category)
            except ImageLookupError as exc:
                ENRICH_LOG.warning("no image for %s: %s", item.name, exc)
            except Exception as exc:  # noqa: BLE001
                ENRICH_LOG.warning("image lookup failed for %s: %s", item.name, exc)

        return item.model_copy(update=updates) if updates else item
