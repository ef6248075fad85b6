import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from agent_parameters import EnrichmentConfig
from enrichment import (
    Enricher,
    ImageFinder,
    ImageLookupError,
    ImageProvider,
    PexelsImageSearch,
    PriceEstimateError,
    PriceEstimator,
    UnsplashImageSearch,
    parse_price_text,
    placeholder_image_url,
)
from models import InvoiceItem, ItemType


def chat_reply(text):
    message = SimpleNamespace(content=text)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_openai(reply=None, error=None):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=chat_reply(reply), side_effect=error)
    return client


class ScriptedProvider(ImageProvider):
    """Fails for the names in `broken`, answers `url` for everything else."""

    def __init__(self, name, url=None, broken=()):
        self.name = name
        self.url = url
        self.broken = set(broken)
        self.queries_seen = []

    async def find(self, part_name, category):
        self.queries_seen.append(part_name)
        if part_name in self.broken:
            raise httpx.ConnectError(f"{self.name} unreachable")
        return self.url


# Price


def test_table_price_needs_no_external_call(policy):
    client = fake_openai("999")
    estimator = PriceEstimator(policy, EnrichmentConfig(), client=client)
    assert asyncio.run(estimator.enrich_price("Front Brake Pad", category="brake")) == 45.0
    client.chat.completions.create.assert_not_awaited()


def test_longer_table_keys_win(policy):
    assert policy.table_price("Steering Wheel") == 150.0
    assert policy.table_price("Wheel Bearing") == 65.0
    assert policy.table_price("Spare Wheel") == 120.0
    keys = list(policy.price_table)
    for i, short in enumerate(keys):
        for long in keys[i + 1:]:
            assert short not in long, f"{long!r} is shadowed by {short!r}"


def test_llm_estimate_when_table_misses(policy):
    client = fake_openai("About $1,249.99 for most sedans")
    estimator = PriceEstimator(policy, EnrichmentConfig(), client=client)
    assert asyncio.run(estimator.enrich_price("Flux Capacitor", "electrical")) == 1249.99
    prompt = client.chat.completions.create.await_args.kwargs["messages"][1]["content"]
    assert "Flux Capacitor (electrical)" in prompt


@pytest.mark.parametrize("reply", ["no idea", "0", "", None])
def test_unusable_estimate_is_rejected(policy, reply):
    estimator = PriceEstimator(policy, EnrichmentConfig(), client=fake_openai(reply))
    with pytest.raises(PriceEstimateError):
        asyncio.run(estimator.enrich_price("Flux Capacitor"))


def test_llm_transport_error_is_typed(policy):
    estimator = PriceEstimator(policy, EnrichmentConfig(), client=fake_openai(error=RuntimeError("boom")))
    with pytest.raises(PriceEstimateError, match="boom"):
        asyncio.run(estimator.enrich_price("Flux Capacitor"))


def test_no_key_and_no_table_match_gives_none(policy):
    estimator = PriceEstimator(policy, EnrichmentConfig())
    assert asyncio.run(estimator.enrich_price("Flux Capacitor")) is None


def test_parse_price_text():
    assert parse_price_text("$45") == 45.0
    assert parse_price_text("12.5 USD") == 12.5
    assert parse_price_text("free") is None


def test_needs_price(policy, make_item):
    estimator = PriceEstimator(policy, EnrichmentConfig())
    assert estimator.needs_price(make_item(price=0))
    assert estimator.needs_price(make_item(price=9000))
    assert not estimator.needs_price(make_item(price=45))


# Image providers


def test_unsplash_tries_query_variants():
    queries = []

    def handler(request):
        queries.append(request.url.params["query"])
        assert request.headers["Authorization"] == "Client-ID unsplash-key"
        if len(queries) < 2:
            return httpx.Response(200, json={"results": []})
        return httpx.Response(200, json={"results": [{"urls": {"regular": "https://img/mount.jpg"}}]})

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await UnsplashImageSearch("unsplash-key", client).find("Engine Mount", "engine")

    assert asyncio.run(go()) == "https://img/mount.jpg"
    assert queries == ["Engine Mount automotive part isolated", "Engine Mount car part replacement"]


def test_pexels_reads_photo_src():
    def handler(request):
        assert request.headers["Authorization"] == "pexels-key"
        return httpx.Response(200, json={"photos": [{"src": {"medium": "https://px/rotor.jpg"}}]})

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await PexelsImageSearch("pexels-key", client).find("Brake Rotor", None)

    assert asyncio.run(go()) == "https://px/rotor.jpg"


def test_provider_http_error_propagates_to_finder():
    def handler(request):
        return httpx.Response(403, json={"errors": ["rate limited"]})

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            finder = ImageFinder([UnsplashImageSearch("k", client), PexelsImageSearch("k", client)])
            return await finder.find("Alternator")

    with pytest.raises(ImageLookupError):
        asyncio.run(go())


def test_finder_prefers_first_provider():
    first = ScriptedProvider("unsplash", url="https://a/1.jpg")
    second = ScriptedProvider("pexels", url="https://b/1.jpg")
    assert asyncio.run(ImageFinder([first, second]).find("Battery")) == "https://a/1.jpg"
    assert second.queries_seen == []


def test_finder_falls_through_to_second_provider():
    first = ScriptedProvider("unsplash", broken={"Battery"})
    second = ScriptedProvider("pexels", url="https://b/1.jpg")
    assert asyncio.run(ImageFinder([first, second]).find("Battery")) == "https://b/1.jpg"


def test_placeholder_when_nobody_has_a_picture():
    finder = ImageFinder([ScriptedProvider("unsplash"), ScriptedProvider("pexels")])
    assert asyncio.run(finder.find("Sway Bar Link")) == placeholder_image_url("Sway Bar Link")
    assert "Sway%20Bar%20Link" in placeholder_image_url("Sway Bar Link")


def test_placeholder_without_providers():
    assert asyncio.run(ImageFinder([]).find("Gas Cap")) == placeholder_image_url("Gas Cap")


# Batch enrichment


def test_failure_isolation_across_items(policy):
    providers = [
        ScriptedProvider("unsplash", url="https://a/part.jpg", broken={"Mystery Bracket"}),
        ScriptedProvider("pexels", url="https://b/part.jpg", broken={"Mystery Bracket"}),
    ]
    enricher = Enricher(
        EnrichmentConfig(),
        policy,
        prices=PriceEstimator(policy, EnrichmentConfig()),
        images=ImageFinder(providers),
    )
    items = [
        InvoiceItem(name="Engine Mount", price=0, type="part"),
        InvoiceItem(name="Mystery Bracket", price=30, type="part"),
    ]
    enriched = asyncio.run(enricher.enrich(items))
    assert [i.name for i in enriched] == ["Engine Mount", "Mystery Bracket"]
    assert enriched[0].price == 45.0
    assert enriched[0].image_url == "https://a/part.jpg"
    assert enriched[1].image_url is None
    assert enriched[1].price == 30.0


def test_price_failure_keeps_original_price(policy):
    prices = PriceEstimator(policy, EnrichmentConfig(), client=fake_openai("dunno"))
    enricher = Enricher(EnrichmentConfig(), policy, prices=prices, images=ImageFinder([]))
    item = InvoiceItem(name="Flux Capacitor", price=9000, type="part")
    enriched = asyncio.run(enricher.enrich([item]))[0]
    assert enriched.price == 9000
    assert enriched.image_url == placeholder_image_url("Flux Capacitor")


def test_image_crash_keeps_looked_up_price(policy):
    class ExplodingFinder:
        async def find(self, name, category=None):
            if name == "Tire":
                raise KeyError("surprise")
            return "https://img/ok.jpg"

    enricher = Enricher(EnrichmentConfig(), policy, prices=PriceEstimator(policy, EnrichmentConfig()), images=ExplodingFinder())
    items = [InvoiceItem(name="Tire", price=0), InvoiceItem(name="Bulb", price=8)]
    enriched = asyncio.run(enricher.enrich(items))
    assert enriched[0].price == 95.0
    assert enriched[0].image_url is None
    assert enriched[1].image_url == "https://img/ok.jpg"


def test_price_crash_keeps_image(policy):
    class ExplodingPrices(PriceEstimator):
        async def enrich_price(self, name, category=None):
            raise KeyError("surprise")

    finder = ImageFinder([ScriptedProvider("unsplash", url="https://a/x.jpg")])
    enricher = Enricher(EnrichmentConfig(), policy, prices=ExplodingPrices(policy, EnrichmentConfig()), images=finder)
    enriched = asyncio.run(enricher.enrich([InvoiceItem(name="Flux Capacitor", price=0)]))[0]
    assert enriched.price == 0
    assert enriched.image_url == "https://a/x.jpg"


def test_malformed_provider_body_falls_through_and_price_survives(policy):
    def handler(request):
        if request.url.host == "api.unsplash.com":
            return httpx.Response(200, json=[])
        return httpx.Response(200, json={"photos": [{"src": {"medium": "https://px/mount.jpg"}}]})

    async def go(providers):
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            enricher = Enricher(
                EnrichmentConfig(),
                policy,
                prices=PriceEstimator(policy, EnrichmentConfig()),
                images=ImageFinder([p("k", client) for p in providers]),
            )
            return (await enricher.enrich([InvoiceItem(name="Engine Mount", price=0)]))[0]

    both = asyncio.run(go([UnsplashImageSearch, PexelsImageSearch]))
    assert both.price == 45.0
    assert both.image_url == "https://px/mount.jpg"

    only_broken = asyncio.run(go([UnsplashImageSearch]))
    assert only_broken.price == 45.0
    assert only_broken.image_url is None


def test_labor_and_services_are_not_enriched(policy):
    finder = ImageFinder([ScriptedProvider("unsplash", url="https://a/x.jpg")])
    enricher = Enricher(EnrichmentConfig(), policy, prices=PriceEstimator(policy, EnrichmentConfig()), images=finder)
    labor = InvoiceItem(name="Labor (1 Hour)", price=0, type=ItemType.LABOR, hours=1)
    service = InvoiceItem(name="Diagnostics", price=0, type=ItemType.SERVICE)
    assert asyncio.run(enricher.enrich([labor, service])) == [labor, service]
