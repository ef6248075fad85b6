from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

import numpy as np

from agent_workflow import ExtractionError, ExtractorUnavailable, ItemExtractor, fallback_parse
from config import AgentConfig
from enrichment import Enricher
from invoice import Invoice
from models import InvoiceItem, ItemType, JobContext, TranscriptEntry
from notifier import ITEM_ADDED, ITEM_MADE_FREE, ITEM_REMOVED, ITEM_UPDATED, LABOR_UPDATED, WebhookNotifier
from stt_core import FAILURE, AudioChunk, AudioChunker, ErrorNoticeGate, TranscriptionClient, TranscriptionResult
from transcript_filter import sanitize

__all__ = ["AgentSession", "BestEffortTasks", "TranscriptSequencer", "customer_status_for"]

SESSION_LOG = logging.getLogger("invoice_agent.session")

STATUS_WAITING = "Waiting to start..."
STATUS_LISTENING = "Technician is working on your vehicle..."
STATUS_DIAGNOSING = "Technician is diagnosing the issue..."
STATUS_REPLACING = "Technician is replacing parts..."
STATUS_COMPLETE = "Job complete. Your invoice is being prepared."


def customer_status_for(text: str) -> Optional[str]:
    lowered = text.lower()
    if "checking" in lowered or "diagnosing" in lowered:
        return STATUS_DIAGNOSING
    if "installing" in lowered or "replacing" in lowered:
        return STATUS_REPLACING
    return None


class BestEffortTasks:
    """Detached tasks whose failures are logged, never re-raised."""

    def __init__(self, logger: logging.Logger = SESSION_LOG):
        self._tasks: Set[asyncio.Task] = set()
        self._log = logger

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable, name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finished(t, name))
        return task

    def _finished(self, task: asyncio.Task, name: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._log.error("%s failed: %s", name, exc, exc_info=exc)

    async def drain(self) -> None:
        # tasks may spawn follow-up tasks (extraction -> notification)
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class TranscriptSequencer:
    """Releases chunk results in chunk order, whatever order they complete in."""

    def __init__(self) -> None:
        self._next = 0
        self._pending: Dict[int, Optional[str]] = {}

    def submit(self, sequence: int, text: Optional[str]) -> List[tuple]:
        if sequence < self._next:
            return [(sequence, text)] if text else []
        self._pending[sequence] = text
        released = []
        while self._next in self._pending:
            value = self._pending.pop(self._next)
            if value:
                released.append((self._next, value))
            self._next += 1
        return released

    def drain(self) -> List[tuple]:
        """Give up on gaps: release whatever is still waiting, in order."""
        released = [(seq, text) for seq, text in sorted(self._pending.items()) if text]
        if self._pending:
            self._next = max(self._pending) + 1
        self._pending.clear()
        return released

    def reset(self) -> None:
        self._next = 0
        self._pending.clear()


class AgentSession:
    """Owns transcript, invoice and status for one job.

    All mutation goes through these methods and runs on the event loop, so
    every check-then-append on the invoice is atomic with respect to other
    tasks.
    """

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        *,
        job: Optional[JobContext] = None,
        transcriber: Optional[TranscriptionClient] = None,
        extractor: Optional[ItemExtractor] = None,
        enricher: Optional[Enricher] = None,
        notifier: Optional[WebhookNotifier] = None,
        on_error: Optional[Callable[[TranscriptionResult], None]] = None,
        on_transcript: Optional[Callable[[TranscriptEntry], None]] = None,
        on_items: Optional[Callable[[List[InvoiceItem]], None]] = None,
    ):
        self.cfg = config or AgentConfig.from_env()
        self.job = job or JobContext.from_env()
        self.transcriber = transcriber or TranscriptionClient(self.cfg.transcription)
        self.extractor = extractor or ItemExtractor(self.cfg.extraction)
        self.enricher = enricher or Enricher(self.cfg.enrichment, self.cfg.pricing)
        self.notifier = notifier or WebhookNotifier(self.cfg.notifier)
        self.on_error = on_error
        self.on_transcript = on_transcript
        self.on_items = on_items

        self.chunker = AudioChunker(self.cfg.chunk)
        self.invoice = Invoice(self.cfg.pricing)
        self.transcript: List[TranscriptEntry] = []
        self.customer_status = STATUS_WAITING
        self.recording = False

        self.tasks = BestEffortTasks()
        self._sequencer = TranscriptSequencer()
        self._errors = ErrorNoticeGate()
        self._in_flight: Set[asyncio.Task] = set()
        self._generation = 0
        self._warned_fallback = False

    # ---- read side -----------------------------------------------------

    @property
    def items(self):
        return self.invoice.items

    @property
    def total(self) -> float:
        return self.invoice.total

    # ---- recording -----------------------------------------------------

    def start_recording(self) -> None:
        self.chunker.reset()
        self._sequencer.reset()
        self.recording = True
        if self.customer_status == STATUS_WAITING:
            self.customer_status = STATUS_LISTENING
        SESSION_LOG.info("recording started for job %s", self.job.job_number)

    def push_audio(self, samples: np.ndarray) -> None:
        """Capture-side entry point; never waits on the network."""
        if not self.recording:
            return
        for chunk in self.chunker.push(samples):
            self.accept_chunk(chunk)

    def accept_chunk(self, chunk: AudioChunk) -> asyncio.Task:
        task = asyncio.ensure_future(self._transcribe_chunk(chunk, self._generation))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def stop_recording(self) -> None:
        """Flush the partial chunk, wait for transcriptions, run a final extraction."""
        if not self.recording:
            return
        final = self.chunker.flush()
        if final is not None:
            self.accept_chunk(final)
        self.recording = False
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)
        for seq, text in self._sequencer.drain():
            self._append_entry(text, seq)
        if self.transcript:
            await self._extract_and_merge(None, force=True)
        SESSION_LOG.info("recording stopped; %d transcript entries", len(self.transcript))

    async def _transcribe_chunk(self, chunk: AudioChunk, generation: int) -> None:
        result = await self.transcriber.transcribe(chunk)
        if generation != self._generation:
            SESSION_LOG.debug("ignoring chunk %s from a torn-down recording", chunk.sequence)
            return

        text: Optional[str] = None
        if result.ok:
            text = sanitize(result.text) or None
        elif result.kind == FAILURE:
            self._surface_error(result)

        for seq, released in self._sequencer.submit(chunk.sequence, text):
            entry = self._append_entry(released, seq)
            self.tasks.spawn(self._extract_and_merge(entry), f"extraction for chunk {seq}")

    def _surface_error(self, result: TranscriptionResult) -> None:
        if not self._errors.should_surface(result):
            return
        SESSION_LOG.warning("transcription error: %s", result.reason)
        if self.on_error is not None:
            self.on_error(result)

    # ---- transcript ----------------------------------------------------

    def _append_entry(self, text: str, sequence: Optional[int] = None) -> TranscriptEntry:
        entry = TranscriptEntry(text=text, sequence=sequence)
        self.transcript.append(entry)
        status = customer_status_for(text)
        if status:
            self.customer_status = status
        if self.on_transcript is not None:
            self.on_transcript(entry)
        return entry

    async def ingest_text(self, raw_text: str, *, force: bool = False) -> List[InvoiceItem]:
        """Feed narration text directly (no audio); returns items added."""
        text = sanitize(raw_text)
        if not text:
            return []
        entry = self._append_entry(text)
        return await self._extract_and_merge(entry, force=force)

    # ---- extraction -> enrichment -> merge -> notify -------------------

    async def _candidates(self, entry: Optional[TranscriptEntry], force: bool) -> List[InvoiceItem]:
        history = list(self.transcript)
        try:
            candidates = await self.extractor.extract(history, entry.text if entry else None, force=force)
        except ExtractorUnavailable as exc:
            if not self._warned_fallback:
                SESSION_LOG.warning("%s; using lexical parser", exc)
                self._warned_fallback = True
            return fallback_parse(entry.text, self.cfg.pricing) if entry else []
        except ExtractionError as exc:
            SESSION_LOG.warning("extraction failed (%s); using lexical parser", exc)
            return fallback_parse(entry.text, self.cfg.pricing) if entry else []
        return candidates or []

    async def _extract_and_merge(self, entry: Optional[TranscriptEntry], *, force: bool = False) -> List[InvoiceItem]:
        generation = self._generation
        candidates = await self._candidates(entry, force)
        if not candidates:
            return []
        # skip enrichment work for names already on the invoice
        known = {i.dedup_key for i in self.invoice.items}
        candidates = [c for c in candidates if c.dedup_key not in known]
        if not candidates:
            return []
        enriched = await self.enricher.enrich(candidates)
        if generation != self._generation:
            return []

        added = self.invoice.merge(enriched)
        if added and self.on_items is not None:
            self.on_items(added)
        excerpt = entry.text if entry else None
        for item in added:
            self._notify(ITEM_ADDED, item, excerpt)
        return added

    def _notify(self, action: str, item: InvoiceItem, excerpt: Optional[str] = None) -> None:
        self.tasks.spawn(self.notifier.notify(action, item, self.job, excerpt), f"{action} notification")

    # ---- user actions --------------------------------------------------

    def add_item(self, item: InvoiceItem) -> InvoiceItem:
        added = self.invoice.add(item)
        self._notify(ITEM_ADDED, added)
        return added

    def add_labor(self, hours: float = 1.0, description: Optional[str] = None) -> InvoiceItem:
        label = f"{hours:g} Hour{'' if hours == 1 else 's'}"
        item = InvoiceItem(
            name=f"Labor ({label})",
            price=round(hours * self.cfg.pricing.hourly_rate, 2),
            type=ItemType.LABOR,
            hours=hours,
            description=f"{hours:g} hour(s) of labor",
            labor_description=description,
            category="labor",
        )
        return self.add_item(item)

    def remove_item(self, item_id: int) -> InvoiceItem:
        removed = self.invoice.remove(item_id)
        self._notify(ITEM_REMOVED, removed)
        return removed

    def make_free(self, item_id: int) -> InvoiceItem:
        item = self.invoice.set_free(item_id)
        self._notify(ITEM_MADE_FREE, item)
        return item

    def restore_item(self, item_id: int) -> InvoiceItem:
        item = self.invoice.restore(item_id)
        self._notify(ITEM_UPDATED, item)
        return item

    def update_labor_description(self, item_id: int, text: str) -> InvoiceItem:
        item = self.invoice.update_labor_description(item_id, text)
        self._notify(LABOR_UPDATED, item)
        return item

    async def complete_job(self) -> bool:
        if self.recording:
            await self.stop_recording()
        await self.tasks.drain()
        self.customer_status = STATUS_COMPLETE
        return await self.notifier.notify_summary(self.invoice.items, self.invoice.total, self.job)

    def reset(self) -> None:
        """Start over; results still in flight from before are dropped."""
        self._generation += 1
        self.recording = False
        self.chunker.reset()
        self._sequencer.reset()
        self._errors.reset()
        self.extractor.limiter.reset()
        self.invoice.clear()
        self.transcript.clear()
        self.customer_status = STATUS_WAITING

    async def aclose(self) -> None:
        await self.tasks.drain()
        await self.transcriber.aclose()
        await self.enricher.aclose()
        await self.notifier.aclose()
