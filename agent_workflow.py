from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

from agents import Agent, AgentOutputSchema, ModelSettings, Runner, set_default_openai_key
from pydantic import BaseModel, Field, ValidationError, field_validator

from config import ExtractionConfig, PricingPolicy
from models import InvoiceItem, ItemType, TranscriptEntry

__all__ = [
    "ExtractionError",
    "ExtractorUnavailable",
    "ExtractedItems",
    "RateLimiter",
    "ItemExtractor",
    "build_context",
    "parse_items_payload",
    "fallback_parse",
    "spoken_price",
]

EXTRACT_LOG = logging.getLogger("invoice_agent.extract")


class ExtractionError(RuntimeError):
    """The language model call failed or returned something unusable."""


class ExtractorUnavailable(ExtractionError):
    """No API key; callers go straight to the lexical parser."""


SYSTEM_INSTRUCTIONS = (
    "You are a helpful assistant that extracts structured invoice data from transcripts. "
    'Return a JSON object with an "items" array containing the extracted invoice items.'
)

EXTRACTION_PROMPT = """You are an expert automotive service invoice assistant. Analyze the technician's spoken transcript and extract ALL parts, labor, and services with SPECIFIC names and details.

CRITICAL: Use the ACTUAL part names mentioned. Never use generic names like "Part", "Component", or "Item".

Transcript: "{transcript}"

Extraction rules:
1. NAME: the exact part name (e.g. "Engine Mount", "Brake Rotor", "Timing Belt"). If only a category is mentioned, infer a reasonable specific name. For labor use the format "Labor (X Hour(s))".
2. PRICE: the exact price if one is spoken. Otherwise estimate a realistic retail price:
   - Common parts: $25-$150 (filters, belts, sensors, small components)
   - Medium parts: $150-$350 (alternators, starters, radiators, suspension components)
   - Large parts: $350-$800 (transmissions, engines, major body parts)
   - Labor: $85-$120/hour
3. TYPE: "part" for physical parts, "labor" for work time, "service" for services like diagnostics or oil changes.
4. DESCRIPTION: what was done (e.g. "Replaced front engine mount").
5. LABOR_DESCRIPTION: for labor entries, a detailed description of the work performed.
6. HOURS: for labor entries, the number of hours (e.g. "1.5 hours" -> 1.5).
7. QUANTITY: if mentioned, default 1.
8. PART NUMBER and BRAND: if mentioned.
9. CATEGORY: engine, brake, electrical, suspension, transmission, cooling, fuel, exhaust, ignition, labor, ...

Return a JSON object with an "items" array, for example:
{{"items": [
  {{"name": "Engine Mount", "price": 45.00, "type": "part", "description": "Replaced front engine mount", "quantity": 1, "partNumber": null, "brand": null, "category": "engine"}},
  {{"name": "Labor (2 Hours)", "price": 170.00, "type": "labor", "description": "2 hours of labor", "laborDescription": "Replaced engine mount", "hours": 2, "quantity": 1, "category": "labor"}}
]}}

If no items are found, return {{"items": []}}."""


@dataclass
class RateLimiter:
    """Minimum spacing between the *starts* of consecutive calls."""

    min_interval: float
    clock: Callable[[], float] = field(default=time.monotonic)
    _last_start: Optional[float] = None

    def try_acquire(self) -> bool:
        now = self.clock()
        if self._last_start is not None and now - self._last_start < self.min_interval:
            return False
        self._last_start = now
        return True

    def mark(self) -> None:
        self._last_start = self.clock()

    def reset(self) -> None:
        self._last_start = None


def build_context(
    entries: Sequence[TranscriptEntry],
    new_text: Optional[str] = None,
    *,
    max_entries: int = 10,
    max_chars: int = 1500,
) -> str:
    recent = [e.text.strip() for e in list(entries)[-max_entries:] if e.text.strip()]
    if new_text and new_text.strip() and (not recent or recent[-1] != new_text.strip()):
        recent.append(new_text.strip())
    context = " ".join(recent)
    if len(context) > max_chars:
        context = context[-max_chars:]
    return context


class ExtractedItems(BaseModel):
    """Structured output contract for the extraction agent."""

    items: List[InvoiceItem] = Field(default_factory=list)

    @field_validator("items", mode="before")
    @classmethod
    def _drop_model_ids(cls, value: Any) -> Any:
        # ids are ours to assign; junk entries are skipped
        if not isinstance(value, list):
            return value
        return [{k: v for k, v in raw.items() if k != "id"} for raw in value if isinstance(raw, dict)]


_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


def parse_items_payload(content: str) -> List[InvoiceItem]:
    """Turn model output into items; raise ExtractionError when unparseable."""
    text = (content or "").strip()
    if not text:
        raise ExtractionError("Empty response from the extraction model")
    try:
        parsed: Any = json.loads(text)
    except json.JSONDecodeError:
        match = _ARRAY_RE.search(text)
        if not match:
            raise ExtractionError("Invalid JSON response from the extraction model")
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            raise ExtractionError("Invalid JSON response from the extraction model") from exc

    raw_items: List[Any] = []
    if isinstance(parsed, list):
        raw_items = parsed
    elif isinstance(parsed, dict):
        for key in ("items", "data"):
            if isinstance(parsed.get(key), list):
                raw_items = parsed[key]
                break

    items: List[InvoiceItem] = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            continue
        raw = {k: v for k, v in raw.items() if k != "id"}
        try:
            items.append(InvoiceItem.model_validate(raw))
        except ValidationError as exc:
            EXTRACT_LOG.warning("skipping malformed item %r: %s", raw, exc.errors()[0].get("msg"))
    return items


class ItemExtractor:
    """One structured-generation request per call, debounced."""

    def __init__(
        self,
        config: Optional[ExtractionConfig] = None,
        *,
        runner: Any = Runner,
        limiter: Optional[RateLimiter] = None,
    ):
        self.cfg = config or ExtractionConfig.from_env()
        self.limiter = limiter or RateLimiter(self.cfg.min_interval_s)
        self._runner = runner
        if self.cfg.api_key:
            set_default_openai_key(self.cfg.api_key)
        self.agent = Agent(
            name="InvoiceExtractor",
            instructions=SYSTEM_INSTRUCTIONS,
            model=self.cfg.model,
            model_settings=ModelSettings(temperature=self.cfg.temperature),
            output_type=AgentOutputSchema(ExtractedItems, strict_json_schema=False),
        )

    @property
    def available(self) -> bool:
        return bool(self.cfg.api_key)

    async def extract(
        self,
        entries: Sequence[TranscriptEntry],
        new_text: Optional[str] = None,
        *,
        force: bool = False,
    ) -> Optional[List[InvoiceItem]]:
        """Return candidate items, or None when the call was debounced."""
        if not self.available:
            raise ExtractorUnavailable("OPENAI_API_KEY missing; extraction disabled")

        if force:
            self.limiter.mark()
        elif not self.limiter.try_acquire():
            EXTRACT_LOG.debug("extraction skipped (debounced)")
            return None

        context = build_context(
            entries,
            new_text,
            max_entries=self.cfg.context_entries,
            max_chars=self.cfg.context_chars,
        )
        if not context:
            return []

        prompt = EXTRACTION_PROMPT.format(transcript=context.replace('"', "'"))
        EXTRACT_LOG.info("extracting items from %d chars model=%s", len(context), self.cfg.model)
        try:
            result = await asyncio.wait_for(
                self._runner.run(self.agent, input=prompt),
                timeout=self.cfg.timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise ExtractionError(f"Extraction timed out after {self.cfg.timeout_s:.0f}s") from exc
        except Exception as exc:  # noqa: BLE001 - SDK raises many transport types
            raise ExtractionError(f"Extraction request failed: {exc}") from exc

        output = result.final_output
        if isinstance(output, ExtractedItems):
            items = list(output.items)
        else:
            # raw-text reply (or a runner without the schema)
            items = parse_items_payload(str(output or ""))
        EXTRACT_LOG.info("model proposed %d item(s)", len(items))
        return items


# ---------------------------------------------------------------------------
# Lexical fallback

_UNITS = {
    "zero": 0, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6,
    "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12,
    "thirteen": 13, "fourteen": 14, "fifteen": 15, "sixteen": 16,
    "seventeen": 17, "eighteen": 18, "nineteen": 19,
}
_TENS = {
    "twenty": 20, "thirty": 30, "forty": 40, "fifty": 50,
    "sixty": 60, "seventy": 70, "eighty": 80, "ninety": 90,
}
_NUMBER_WORD = "|".join(list(_UNITS) + list(_TENS) + ["hundred", "thousand", "a", "and"])

_CURRENCY = r"(?:dollars?|bucks?|usd)"
_DIGIT_PRICE_RE = re.compile(
    r"\$\s*(\d[\d,]*(?:\.\d{1,2})?)|(\d[\d,]*(?:\.\d{1,2})?)\s*" + _CURRENCY,
    re.IGNORECASE,
)
_WORD_PRICE_RE = re.compile(
    r"\b((?:(?:" + _NUMBER_WORD + r")[\s-]+)+)" + _CURRENCY + r"\b",
    re.IGNORECASE,
)
_HOURS_RE = re.compile(r"\b(\d+(?:\.\d+)?|" + "|".join(_UNITS) + r"|half an?)\s*(?:-\s*)?hours?", re.IGNORECASE)
_LABOR_CUE_RE = re.compile(r"\b(labor|labour|hours?)\b", re.IGNORECASE)
_PART_CUE_RE = re.compile(r"\b(part|parts|replac\w*|install\w*|new)\b", re.IGNORECASE)


def _words_to_number(phrase: str) -> Optional[float]:
    total = 0
    current = 0
    seen = False
    for word in re.split(r"[\s-]+", phrase.lower().strip()):
        if not word or word == "and":
            continue
        if word == "a":
            current = max(current, 1)
            continue
        if word in _UNITS:
            current += _UNITS[word]
            seen = True
        elif word in _TENS:
            current += _TENS[word]
            seen = True
        elif word == "hundred":
            current = max(current, 1) * 100
            seen = True
        elif word == "thousand":
            total += max(current, 1) * 1000
            current = 0
            seen = True
        else:
            return None
    if not seen:
        return None
    return float(total + current)


def spoken_price(text: str) -> Optional[float]:
    """First price in `text`, from digits ("$45", "45 dollars") or words."""
    match = _DIGIT_PRICE_RE.search(text)
    if match:
        raw = (match.group(1) or match.group(2) or "").replace(",", "")
        try:
            return float(raw)
        except ValueError:
            pass
    match = _WORD_PRICE_RE.search(text)
    if match:
        return _words_to_number(match.group(1))
    return None


def _spoken_hours(text: str) -> Optional[float]:
    match = _HOURS_RE.search(text)
    if not match:
        return None
    raw = match.group(1).lower()
    if raw.startswith("half"):
        return 0.5
    if raw in _UNITS:
        return float(_UNITS[raw]) or None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def _labor_name(hours: float) -> str:
    amount = f"{hours:g}"
    return f"Labor ({amount} Hour{'' if hours == 1 else 's'})"


def fallback_parse(text: str, policy: Optional[PricingPolicy] = None) -> List[InvoiceItem]:
    """Regex/keyword parser used when the model is unavailable or fails."""
    policy = policy or PricingPolicy()
    if not text or not text.strip():
        return []
    lowered = text.lower()
    price = spoken_price(text)

    if _LABOR_CUE_RE.search(lowered):
        hours = _spoken_hours(lowered) or 1.0
        labor_price = price if price and price > 0 else round(hours * policy.hourly_rate, 2)
        return [
            InvoiceItem(
                name=_labor_name(hours),
                price=labor_price,
                type=ItemType.LABOR,
                hours=hours,
                description=f"{hours:g} hour(s) of labor",
                labor_description=text.strip(),
                category="labor",
            )
        ]

    known = next((key for key in policy.price_table if key in lowered), None)
    if price is None and not (known and _PART_CUE_RE.search(lowered)):
        return []

    name = known.title() if known else "Additional Part"
    if price is None or price <= 0:
        price = policy.price_table.get(known, 0.0) if known else 0.0
    return [
        InvoiceItem(
            name=name,
            price=price,
            type=ItemType.PART,
            description=text.strip(),
        )
    ]
