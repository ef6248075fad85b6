from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

__all__ = [
    "ChunkConfig",
    "TranscriptionConfig",
    "ExtractionConfig",
    "PricingPolicy",
    "EnrichmentConfig",
    "NotifierConfig",
    "AgentConfig",
    "DEFAULT_PRICE_TABLE",
    "load_api_key",
    "load_openai_api_key",
    "load_agent_config",
]

LOG = logging.getLogger("invoice_agent.config")


def _env_int(name: str, default: int) -> int:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        return default


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    if val is None:
        return default
    val = val.strip()
    return val or default


def _default_key_file() -> Path:
    # Prefer openai_api_key.txt alongside main.py, fall back to the parent dir.
    script_dir = Path(__file__).resolve().parent
    candidates = [
        script_dir / "openai_api_key.txt",
        script_dir.parent / "openai_api_key.txt",
    ]
    for path in candidates:
        if path.exists():
            return path
    return candidates[0]


def load_api_key(env_name: str, file_env: Optional[str] = None, default_file: Optional[Path] = None) -> Optional[str]:
    """Load a provider key from env, or from a text file named by `file_env`."""
    key = os.environ.get(env_name)
    if key:
        key = key.strip()
        if key:
            return key

    key_file = os.environ.get(file_env) if file_env else None
    path = Path(key_file).expanduser() if key_file else default_file
    if path is None or not path.exists():
        return None

    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return text or None


def load_openai_api_key() -> Optional[str]:
    """Load the OpenAI API key from env or a local text file."""
    return load_api_key("OPENAI_API_KEY", "OPENAI_API_KEY_FILE", _default_key_file())


DEFAULT_STT_MODEL = "gpt-4o-mini-transcribe"
DEFAULT_STT_ENDPOINT = "https://api.openai.com/v1/audio/transcriptions"
DEFAULT_LANGUAGE = "en"
DEFAULT_EXTRACT_MODEL = "gpt-4o-mini"
DEFAULT_GEMINI_MODEL = "gemini-1.5-flash"

# Retail prices (USD) for common parts; keys are matched as substrings of the
# lower-cased part name, first match wins.
DEFAULT_PRICE_TABLE: Dict[str, float] = {
    # Engine
    "engine mount": 45,
    "motor mount": 45,
    "transmission mount": 55,
    "engine gasket": 25,
    "head gasket": 85,
    "valve cover gasket": 35,
    "oil pan gasket": 40,
    "water pump": 120,
    "thermostat": 25,
    "radiator hose": 35,
    "radiator": 200,
    "heater hose": 25,
    "coolant temperature sensor": 35,
    "coolant": 18,
    "antifreeze": 18,
    # Ignition
    "spark plug wire": 25,
    "spark plug": 5,
    "ignition coil": 65,
    "distributor cap": 45,
    # Electrical
    "alternator": 180,
    "starter solenoid": 45,
    "starter": 200,
    "battery": 140,
    "voltage regulator": 55,
    # Brakes
    "brake pad": 45,
    "brake rotor": 75,
    "brake disc": 75,
    "brake caliper": 120,
    "brake line": 35,
    "brake fluid": 12,
    "brake master cylinder": 95,
    "brake booster": 180,
    # Suspension
    "shock absorber": 85,
    "strut": 120,
    "control arm": 95,
    "ball joint": 45,
    "tie rod": 55,
    "sway bar link": 35,
    "sway bar": 120,
    "bushing": 25,
    # Exhaust
    "muffler": 150,
    "catalytic converter": 450,
    "exhaust pipe": 85,
    "exhaust manifold": 200,
    "oxygen sensor": 65,
    "o2 sensor": 65,
    # Fuel
    "fuel pump": 180,
    "fuel filter": 25,
    "fuel injector": 85,
    "fuel pressure regulator": 55,
    "gas cap": 15,
    # Transmission
    "transmission fluid": 18,
    "transmission filter": 35,
    "clutch disc": 180,
    "clutch": 250,
    "pressure plate": 120,
    # Filters
    "cabin air filter": 25,
    "oil filter": 8,
    "air filter": 18,
    # Belts
    "timing belt": 55,
    "serpentine belt": 35,
    "drive belt": 35,
    "v-belt": 25,
    # Steering
    "power steering pump": 180,
    "power steering fluid": 12,
    "steering rack": 350,
    "steering column": 250,
    "steering wheel": 150,
    # Wheels
    "tire pressure sensor": 45,
    "wheel bearing": 65,
    "hub bearing": 65,
    "tire": 95,
    "wheel": 120,
    # Lights
    "headlight": 120,
    "taillight": 85,
    "turn signal": 35,
    "fog light": 65,
    "bulb": 8,
    # Body
    "bumper": 250,
    "fender": 180,
    "hood": 350,
    "mirror": 85,
    "windshield wiper": 25,
    "windshield": 300,
    "wiper blade": 18,
    "door": 450,
    # Fluids
    "motor oil": 25,
    # Sensors
    "mass air flow sensor": 95,
    "map sensor": 65,
    "throttle position sensor": 55,
    "crankshaft position sensor": 75,
    "camshaft position sensor": 65,
    "knock sensor": 45,
    # Other
    "pcv valve": 15,
    "egr valve": 85,
    "idle air control valve": 75,
    "throttle body": 180,
    "intake manifold": 250,
    "turbocharger": 850,
    "supercharger": 1200,
}


@dataclass
class ChunkConfig:
    """Fixed-length chunking of microphone audio."""

    sample_rate: int = 16000
    chunk_seconds: float = 1.5
    min_flush_seconds: float = 0.5

    # Peak amplitude (float scale) below which a chunk counts as silence
    silence_peak: float = 0.01

    @property
    def chunk_samples(self) -> int:
        return max(1, int(self.sample_rate * self.chunk_seconds))

    @property
    def min_flush_samples(self) -> int:
        return max(1, int(self.sample_rate * self.min_flush_seconds))

    @classmethod
    def from_env(cls) -> "ChunkConfig":
        d = cls()
        return cls(
            sample_rate=_env_int("AUDIO_SAMPLE_RATE", d.sample_rate),
            chunk_seconds=_env_float("AUDIO_CHUNK_SECONDS", d.chunk_seconds),
            min_flush_seconds=_env_float("AUDIO_MIN_FLUSH_SECONDS", d.min_flush_seconds),
            silence_peak=_env_float("AUDIO_SILENCE_PEAK", d.silence_peak),
        )


@dataclass
class TranscriptionConfig:
    """HTTP transcription parameters."""

    model: str = DEFAULT_STT_MODEL
    language: str = DEFAULT_LANGUAGE
    endpoint: str = DEFAULT_STT_ENDPOINT
    prompt: Optional[str] = field(default_factory=lambda: os.environ.get("STT_PROMPT"))
    api_key: Optional[str] = None
    timeout_s: float = 30.0

    # Anything smaller is a WAV header plus a few samples
    min_chunk_bytes: int = 1024

    @classmethod
    def from_env(cls) -> "TranscriptionConfig":
        d = cls()
        return cls(
            model=_env_str("STT_MODEL", d.model),
            language=_env_str("STT_LANGUAGE", d.language),
            endpoint=_env_str("STT_ENDPOINT", d.endpoint),
            prompt=_env_str("STT_PROMPT", d.prompt),
            api_key=load_openai_api_key(),
            timeout_s=_env_float("STT_TIMEOUT_S", d.timeout_s),
            min_chunk_bytes=_env_int("STT_MIN_CHUNK_BYTES", d.min_chunk_bytes),
        )


@dataclass
class ExtractionConfig:
    """Language-model item extraction."""

    model: str = DEFAULT_EXTRACT_MODEL
    api_key: Optional[str] = None
    temperature: float = 0.3
    timeout_s: float = 30.0

    # Debounce: skip calls started sooner than this after the previous one
    min_interval_s: float = 5.0

    context_entries: int = 10
    context_chars: int = 1500

    @classmethod
    def from_env(cls) -> "ExtractionConfig":
        d = cls()
        return cls(
            model=_env_str("EXTRACT_MODEL", d.model),
            api_key=load_openai_api_key(),
            temperature=_env_float("EXTRACT_TEMPERATURE", d.temperature),
            timeout_s=_env_float("EXTRACT_TIMEOUT_S", d.timeout_s),
            min_interval_s=_env_float("EXTRACT_MIN_INTERVAL_S", d.min_interval_s),
            context_entries=_env_int("EXTRACT_CONTEXT_ENTRIES", d.context_entries),
            context_chars=_env_int("EXTRACT_CONTEXT_CHARS", d.context_chars),
        )


@dataclass
class PricingPolicy:
    """Heuristic pricing knobs shared by extraction, enrichment and the invoice."""

    hourly_rate: float = 85.0
    price_ceiling: float = 5000.0
    price_table: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_PRICE_TABLE))

    def table_price(self, name: str) -> Optional[float]:
        normalized = (name or "").lower()
        for key, price in self.price_table.items():
            if key in normalized:
                return float(price)
        return None

    @classmethod
    def from_env(cls) -> "PricingPolicy":
        d = cls()
        table = d.price_table
        table_file = _env_str("INVOICE_PRICE_TABLE_FILE")
        if table_file:
            try:
                loaded = json.loads(Path(table_file).expanduser().read_text(encoding="utf-8"))
                table = {str(k).lower(): float(v) for k, v in loaded.items()}
            except (OSError, ValueError, AttributeError) as exc:
                LOG.warning("Ignoring price table %s: %s", table_file, exc)
        return cls(
            hourly_rate=_env_float("INVOICE_HOURLY_RATE", d.hourly_rate),
            price_ceiling=_env_float("INVOICE_PRICE_CEILING", d.price_ceiling),
            price_table=table,
        )


@dataclass
class EnrichmentConfig:
    """Price estimation and stock-image lookup."""

    price_model: str = DEFAULT_EXTRACT_MODEL
    openai_api_key: Optional[str] = None
    unsplash_key: Optional[str] = None
    pexels_key: Optional[str] = None
    timeout_s: float = 10.0

    @classmethod
    def from_env(cls) -> "EnrichmentConfig":
        d = cls()
        return cls(
            price_model=_env_str("PRICE_MODEL", d.price_model),
            openai_api_key=load_openai_api_key(),
            unsplash_key=load_api_key("UNSPLASH_ACCESS_KEY"),
            pexels_key=load_api_key("PEXELS_API_KEY"),
            timeout_s=_env_float("ENRICH_TIMEOUT_S", d.timeout_s),
        )


@dataclass
class NotifierConfig:
    """Outbound webhook plus the Gemini explanation sub-call."""

    webhook_url: Optional[str] = None
    gemini_key: Optional[str] = None
    gemini_model: str = DEFAULT_GEMINI_MODEL
    explain_timeout_s: float = 2.0
    timeout_s: float = 10.0

    @classmethod
    def from_env(cls) -> "NotifierConfig":
        d = cls()
        return cls(
            webhook_url=_env_str("INVOICE_WEBHOOK_URL", _env_str("WEBHOOK_URL")),
            gemini_key=load_api_key("GEMINI_API_KEY"),
            gemini_model=_env_str("GEMINI_MODEL", d.gemini_model),
            explain_timeout_s=_env_float("NOTIFY_EXPLAIN_TIMEOUT_S", d.explain_timeout_s),
            timeout_s=_env_float("NOTIFY_TIMEOUT_S", d.timeout_s),
        )


@dataclass
class AgentConfig:
    chunk: ChunkConfig = field(default_factory=ChunkConfig)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    pricing: PricingPolicy = field(default_factory=PricingPolicy)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    notifier: NotifierConfig = field(default_factory=NotifierConfig)

    @classmethod
    def from_env(cls) -> "AgentConfig":
        return cls(
            chunk=ChunkConfig.from_env(),
            transcription=TranscriptionConfig.from_env(),
            extraction=ExtractionConfig.from_env(),
            pricing=PricingPolicy.from_env(),
            enrichment=EnrichmentConfig.from_env(),
            notifier=NotifierConfig.from_env(),
        )


def load_agent_config() -> AgentConfig:
    return AgentConfig.from_env()
