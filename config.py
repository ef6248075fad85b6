from __future__ import annotations
import os

# === Simple knobs (edit these numbers if you dislike envs) ===
STT_MODEL = os.environ.get("STT_MODEL", "gpt-4o-mini-transcribe")
STT_LANGUAGE = os.environ.get("STT_LANGUAGE", "en")
EXTRACT_MODEL = os.environ.get("EXTRACT_MODEL", "gpt-4o-mini")

# Chunk shaping (seconds / float amplitude)
AUDIO = {
    "CHUNK_SECONDS": float(os.environ.get("AUDIO_CHUNK_SECONDS", "1.5")),
    "MIN_FLUSH_SECONDS": float(os.environ.get("AUDIO_MIN_FLUSH_SECONDS", "0.5")),
    "SILENCE_PEAK": float(os.environ.get("AUDIO_SILENCE_PEAK", "0.01")),
}

# Demo job shown on the start screen
JOB = {
    "NUMBER": os.environ.get("JOB_NUMBER", "4092"),
    "CUSTOMER": os.environ.get("JOB_CUSTOMER", "John Doe"),
    "VEHICLE": os.environ.get("JOB_VEHICLE", "2018 Ford Focus"),
}

# Write env once so downstream .from_env() picks them up predictably.
os.environ.setdefault("STT_MODEL", STT_MODEL)
os.environ.setdefault("STT_LANGUAGE", STT_LANGUAGE)
os.environ.setdefault("EXTRACT_MODEL", EXTRACT_MODEL)

os.environ.setdefault("AUDIO_CHUNK_SECONDS", str(AUDIO["CHUNK_SECONDS"]))
os.environ.setdefault("AUDIO_MIN_FLUSH_SECONDS", str(AUDIO["MIN_FLUSH_SECONDS"]))
os.environ.setdefault("AUDIO_SILENCE_PEAK", str(AUDIO["SILENCE_PEAK"]))

# Re-export existing dataclasses and helper so rest of code imports from `config`.
from agent_parameters import (  # noqa: E402
    AgentConfig,
    ChunkConfig,
    EnrichmentConfig,
    ExtractionConfig,
    NotifierConfig,
    PricingPolicy,
    TranscriptionConfig,
    load_agent_config,
    load_api_key,
    load_openai_api_key,
)
