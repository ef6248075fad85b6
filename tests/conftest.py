"""Shared fakes for the pipeline tests."""

import asyncio
from typing import Dict, List, Optional

import pytest

from agent_parameters import AgentConfig, ExtractionConfig, PricingPolicy
from models import InvoiceItem, JobContext
from stt_core import AudioChunk, TranscriptionResult


class FakeResult:
    def __init__(self, output):
        self.final_output = output


class FakeRunner:
    """Stands in for agents.Runner; replays canned outputs or raises."""

    def __init__(self, outputs):
        self.outputs = list(outputs)
        self.calls: List[str] = []

    async def run(self, agent, input):
        self.calls.append(input)
        out = self.outputs.pop(0)
        if isinstance(out, BaseException):
            raise out
        return FakeResult(out)


class RecordingNotifier:
    def __init__(self):
        self.calls = []
        self.summaries = []

    async def notify(self, action, item, job=None, transcript_excerpt=None):
        self.calls.append((action, item, job, transcript_excerpt))
        return True

    async def notify_summary(self, items, total, job=None):
        self.summaries.append((list(items), total, job))
        return True

    async def aclose(self):
        return None


class FakeTranscriber:
    """Returns scripted text per chunk sequence; optional gates delay completion."""

    def __init__(self, texts: Dict[int, TranscriptionResult], gates: Optional[Dict[int, asyncio.Event]] = None):
        self.texts = texts
        self.gates = gates or {}
        self.seen: List[int] = []

    async def transcribe(self, chunk: AudioChunk) -> TranscriptionResult:
        self.seen.append(chunk.sequence)
        gate = self.gates.get(chunk.sequence)
        if gate is not None:
            await gate.wait()
        return self.texts.get(chunk.sequence, TranscriptionResult.empty(chunk.sequence))

    async def aclose(self):
        return None


@pytest.fixture
def policy():
    return PricingPolicy()


@pytest.fixture
def agent_config():
    cfg = AgentConfig()
    cfg.extraction = ExtractionConfig(min_interval_s=0.0)
    return cfg


@pytest.fixture
def job():
    return JobContext(job_number="4092", customer="John Doe", vehicle="2018 Ford Focus")


@pytest.fixture
def make_item():
    def _make(name="Oil Filter", price=8.0, type="part", **extra):
        return InvoiceItem(name=name, price=price, type=type, **extra)

    return _make
