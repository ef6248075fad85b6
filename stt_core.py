from __future__ import annotations

import io
import logging
import wave
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

import httpx
import numpy as np

from config import ChunkConfig, TranscriptionConfig


# ---------------------------------------------------------------------------
# Shared audio constants

STT_LOG = logging.getLogger("invoice_agent.stt")

SAMPLE_RATE = 16000
CHANNELS = 1
SAMPLE_WIDTH = 2  # 16-bit PCM
WAV_MIME = "audio/wav"


def _float32_to_int16(samples: np.ndarray) -> np.ndarray:
    return np.clip(samples * 32768.0, -32768, 32767).astype(np.int16)


def encode_wav(pcm16: bytes, sample_rate: int = SAMPLE_RATE, channels: int = CHANNELS) -> bytes:
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(SAMPLE_WIDTH)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm16)
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Chunking


@dataclass
class AudioChunk:
    """A self-contained slice of microphone audio ready for upload."""

    sequence: int
    pcm16: bytes
    sample_rate: int = SAMPLE_RATE
    reason: str = "interval"
    mime_type: str = WAV_MIME

    @property
    def duration(self) -> float:
        return len(self.pcm16) / float(SAMPLE_WIDTH * self.sample_rate)

    def to_wav(self) -> bytes:
        return encode_wav(self.pcm16, self.sample_rate)


class AudioChunker:
    """Fixed-duration chunker with a peak-amplitude silence gate.

    Owns the sample buffer; callers only `push` float32 frames and `flush`
    on stop.
    """

    def __init__(self, cfg: Optional[ChunkConfig] = None):
        self.cfg = cfg or ChunkConfig()
        self._buffer: List[np.ndarray] = []
        self._buffered = 0
        self._sequence = 0
        self.discarded_silent = 0

    @property
    def buffered_samples(self) -> int:
        return self._buffered

    def push(self, samples: np.ndarray) -> List[AudioChunk]:
        """Append samples; return every chunk that became due."""
        frame = np.asarray(samples, dtype=np.float32).reshape(-1)
        if frame.size == 0:
            return []
        self._buffer.append(frame)
        self._buffered += frame.size

        chunks: List[AudioChunk] = []
        size = self.cfg.chunk_samples
        while self._buffered >= size:
            joined = np.concatenate(self._buffer)
            head, rest = joined[:size], joined[size:]
            self._buffer = [rest] if rest.size else []
            self._buffered = int(rest.size)
            chunk = self._make_chunk(head, "interval")
            if chunk is not None:
                chunks.append(chunk)
        return chunks

    def flush(self) -> Optional[AudioChunk]:
        """Emit the trailing partial chunk if it is long enough and not silent."""
        if not self._buffer:
            return None
        joined = np.concatenate(self._buffer)
        self._buffer = []
        self._buffered = 0
        if joined.size < self.cfg.min_flush_samples:
            STT_LOG.debug("dropping %.2fs remainder (below flush minimum)", joined.size / self.cfg.sample_rate)
            return None
        return self._make_chunk(joined, "flush")

    def reset(self) -> None:
        self._buffer = []
        self._buffered = 0
        self._sequence = 0

    def _make_chunk(self, samples: np.ndarray, reason: str) -> Optional[AudioChunk]:
        peak = float(np.max(np.abs(samples))) if samples.size else 0.0
        if peak < self.cfg.silence_peak:
            self.discarded_silent += 1
            return None
        chunk = AudioChunk(
            sequence=self._sequence,
            pcm16=_float32_to_int16(samples).tobytes(),
            sample_rate=self.cfg.sample_rate,
            reason=reason,
        )
        self._sequence += 1
        return chunk


# ---------------------------------------------------------------------------
# HTTP transcription


SUCCESS = "success"
EMPTY = "empty"
FAILURE = "failure"

# failure subtypes
TRANSPORT = "transport"
SERVICE = "service"
ACCOUNT_RESTRICTED = "account_restricted"
UNCONFIGURED = "unconfigured"

RESTRICTION_MARKERS = ("unusual_activity", "unusual activity", "restricted", "free tier", "free_tier")

RESTRICTED_GUIDANCE = (
    "The speech-to-text account was rejected as restricted. Check the plan or key "
    "for this provider; recording continues but nothing will be transcribed."
)


@dataclass
class TranscriptionResult:
    kind: str
    text: str = ""
    reason: str = ""
    failure_type: Optional[str] = None
    sequence: Optional[int] = None

    @classmethod
    def success(cls, text: str, sequence: Optional[int] = None) -> "TranscriptionResult":
        return cls(SUCCESS, text=text, sequence=sequence)

    @classmethod
    def empty(cls, sequence: Optional[int] = None) -> "TranscriptionResult":
        return cls(EMPTY, sequence=sequence)

    @classmethod
    def failure(cls, reason: str, failure_type: str = SERVICE, sequence: Optional[int] = None) -> "TranscriptionResult":
        return cls(FAILURE, reason=reason, failure_type=failure_type, sequence=sequence)

    @property
    def ok(self) -> bool:
        return self.kind == SUCCESS

    @property
    def guidance(self) -> Optional[str]:
        if self.failure_type == ACCOUNT_RESTRICTED:
            return RESTRICTED_GUIDANCE
        return None


@dataclass
class ErrorNoticeGate:
    """Lets each distinct failure cause through once."""

    _seen: Set[Tuple[str, str]] = field(default_factory=set)

    def should_surface(self, result: TranscriptionResult) -> bool:
        if result.kind != FAILURE:
            return False
        # restricted accounts repeat with varying bodies; one notice is enough
        reason = "" if result.failure_type == ACCOUNT_RESTRICTED else result.reason
        key = (result.failure_type or "", reason)
        if key in self._seen:
            STT_LOG.debug("suppressing repeated transcription error: %s", result.reason)
            return False
        self._seen.add(key)
        return True

    def reset(self) -> None:
        self._seen.clear()


class TranscriptionClient:
    """Posts WAV chunks to an OpenAI-compatible transcription endpoint."""

    def __init__(self, config: Optional[TranscriptionConfig] = None, *, client: Optional[httpx.AsyncClient] = None):
        self.cfg = config or TranscriptionConfig.from_env()
        self._client = client
        self._owns_client = client is None
        self._warned_missing_key = False

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.cfg.timeout_s, connect=10.0))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def transcribe(self, chunk: AudioChunk) -> TranscriptionResult:
        seq = chunk.sequence
        if not self.cfg.api_key:
            if not self._warned_missing_key:
                STT_LOG.warning("OPENAI_API_KEY missing; transcription disabled")
                self._warned_missing_key = True
            return TranscriptionResult.failure("Speech-to-text is not configured", UNCONFIGURED, seq)

        payload = chunk.to_wav()
        if len(payload) < self.cfg.min_chunk_bytes:
            STT_LOG.debug("chunk %s too small to send (%d bytes)", seq, len(payload))
            return TranscriptionResult.empty(seq)

        data: Dict[str, str] = {
            "model": self.cfg.model,
            "language": self.cfg.language,
            "response_format": "json",
            "temperature": "0",
        }
        if self.cfg.prompt:
            data["prompt"] = self.cfg.prompt
        files = {"file": (f"chunk-{seq}.wav", payload, chunk.mime_type)}
        headers = {"Authorization": f"Bearer {self.cfg.api_key}"}

        STT_LOG.info("POST %s chunk=%s bytes=%d model=%s", self.cfg.endpoint, seq, len(payload), self.cfg.model)
        try:
            response = await self._ensure_client().post(self.cfg.endpoint, data=data, files=files, headers=headers)
        except httpx.TimeoutException:
            STT_LOG.error("chunk %s transcription timed out", seq)
            return TranscriptionResult.failure("Transcription request timed out", TRANSPORT, seq)
        except httpx.HTTPError as exc:
            STT_LOG.error("chunk %s upload failed: %s", seq, exc)
            return TranscriptionResult.failure(f"Could not reach the transcription service: {exc}", TRANSPORT, seq)

        if response.status_code != 200:
            return self._failure_from_response(response, seq)

        text = self._response_text(response)
        if not text:
            return TranscriptionResult.empty(seq)
        return TranscriptionResult.success(text, seq)

    @staticmethod
    def _failure_from_response(response: httpx.Response, seq: int) -> TranscriptionResult:
        body = response.text or ""
        STT_LOG.error("chunk %s transcription error %s: %r", seq, response.status_code, body[:500])
        if response.status_code == 401 and any(marker in body.lower() for marker in RESTRICTION_MARKERS):
            return TranscriptionResult.failure(
                "Transcription account is restricted (401)", ACCOUNT_RESTRICTED, seq
            )
        message = _error_message(response) or response.reason_phrase or "unknown error"
        return TranscriptionResult.failure(f"Transcription failed ({response.status_code}): {message}", SERVICE, seq)

    @staticmethod
    def _response_text(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text.strip()
        if isinstance(payload, dict):
            return _extract_json_text(payload)
        return str(payload or "").strip()


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip()[:200]
    if isinstance(payload, dict):
        err = payload.get("error") or payload.get("detail")
        if isinstance(err, dict):
            return str(err.get("message") or err.get("status") or "")
        if err:
            return str(err)
    return ""


def _extract_json_text(payload: Dict[str, object]) -> str:
    candidates: List[str] = []

    direct = payload.get("text")
    if isinstance(direct, str) and direct.strip():
        candidates.append(direct)

    transcript = payload.get("transcript")
    if isinstance(transcript, dict):
        nested = transcript.get("text")
        if isinstance(nested, str) and nested.strip():
            candidates.append(nested)

    segments = payload.get("segments")
    if isinstance(segments, list):
        parts: List[str] = []
        for segment in segments:
            if isinstance(segment, dict):
                text = segment.get("text")
                if isinstance(text, str) and text.strip():
                    parts.append(text.strip())
        if parts:
            candidates.append(" ".join(parts))

    for candidate in candidates:
        candidate_text = str(candidate).strip()
        if candidate_text:
            return candidate_text
    return ""


__all__ = [
    "SAMPLE_RATE",
    "WAV_MIME",
    "AudioChunk",
    "AudioChunker",
    "ErrorNoticeGate",
    "TranscriptionClient",
    "TranscriptionResult",
    "encode_wav",
    "SUCCESS",
    "EMPTY",
    "FAILURE",
    "ACCOUNT_RESTRICTED",
    "UNCONFIGURED",
]
