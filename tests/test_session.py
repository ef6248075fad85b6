import asyncio
import json

import httpx
import numpy as np

from agent_parameters import EnrichmentConfig, ExtractionConfig, NotifierConfig
from agent_workflow import ItemExtractor
from enrichment import Enricher, placeholder_image_url
from notifier import ITEM_ADDED, ITEM_MADE_FREE, ITEM_UPDATED, LABOR_UPDATED, WebhookNotifier
from session import AgentSession, TranscriptSequencer, customer_status_for
from stt_core import ACCOUNT_RESTRICTED, AudioChunk, TranscriptionResult

from conftest import FakeRunner, FakeTranscriber, RecordingNotifier

ENGINE_MOUNT = json.dumps({"items": [{"name": "Engine Mount", "price": 45, "type": "part", "category": "engine"}]})


def make_session(agent_config, job, policy, *, transcriber=None, extractor=None, notifier=None, **callbacks):
    return AgentSession(
        agent_config,
        job=job,
        transcriber=transcriber or FakeTranscriber({}),
        extractor=extractor or ItemExtractor(agent_config.extraction),
        enricher=Enricher(EnrichmentConfig(), policy),
        notifier=notifier or RecordingNotifier(),
        **callbacks,
    )


def chunk(seq):
    return AudioChunk(sequence=seq, pcm16=b"\x10\x00" * 1600)


# Text to invoice


def test_engine_mount_via_lexical_fallback(agent_config, job, policy):
    notifier = RecordingNotifier()
    session = make_session(agent_config, job, policy, notifier=notifier)

    async def go():
        added = await session.ingest_text("Installing new engine mount, forty five dollars")
        await session.tasks.drain()
        return added

    added = asyncio.run(go())
    assert [(i.name, i.price) for i in added] == [("Engine Mount", 45.0)]
    assert session.total == 45.0
    assert session.items[0].image_url == placeholder_image_url("Engine Mount")
    assert [(action, item.name) for action, item, _, _ in notifier.calls] == [(ITEM_ADDED, "Engine Mount")]
    assert notifier.calls[0][2] == job
    assert session.customer_status == "Technician is replacing parts..."


def test_engine_mount_via_language_model(agent_config, job, policy):
    notifier = RecordingNotifier()
    runner = FakeRunner([ENGINE_MOUNT])
    extractor = ItemExtractor(ExtractionConfig(api_key="sk-test", min_interval_s=0.0), runner=runner)
    session = make_session(agent_config, job, policy, extractor=extractor, notifier=notifier)

    async def go():
        await session.ingest_text("Installing new engine mount, forty five dollars")
        await session.tasks.drain()

    asyncio.run(go())
    assert [(i.name, i.price) for i in session.items] == [("Engine Mount", 45.0)]
    assert len(notifier.calls) == 1
    assert "Installing new engine mount, forty five dollars" in runner.calls[0]


def test_extraction_failure_falls_back(agent_config, job, policy):
    runner = FakeRunner([ConnectionError("network down")])
    extractor = ItemExtractor(ExtractionConfig(api_key="sk-test", min_interval_s=0.0), runner=runner)
    session = make_session(agent_config, job, policy, extractor=extractor)
    added = asyncio.run(session.ingest_text("replacing the water pump now"))
    assert [(i.name, i.price) for i in added] == [("Water Pump", 120.0)]


def test_repeated_mentions_stay_single(agent_config, job, policy):
    notifier = RecordingNotifier()
    session = make_session(agent_config, job, policy, notifier=notifier)

    async def go():
        await session.ingest_text("Installing new engine mount, forty five dollars")
        again = await session.ingest_text("okay the ENGINE MOUNT is in, new part")
        await session.tasks.drain()
        return again

    assert asyncio.run(go()) == []
    assert len(session.items) == 1
    assert len(notifier.calls) == 1


def test_filler_text_is_ignored(agent_config, job, policy):
    session = make_session(agent_config, job, policy)
    assert asyncio.run(session.ingest_text("[inaudible] um")) == []
    assert session.transcript == []


def test_failing_webhook_does_not_block_invoice(agent_config, job, policy):
    seen_at_request = []
    session = make_session(agent_config, job, policy)

    def handler(request):
        seen_at_request.append([i.name for i in session.items])
        return httpx.Response(500, text="upstream broke")

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            session.notifier = WebhookNotifier(NotifierConfig(webhook_url="https://hooks.example.test/x"), client=client)
            added = await session.ingest_text("Installing new engine mount, forty five dollars")
            await session.tasks.drain()
            return added

    added = asyncio.run(go())
    assert [i.name for i in added] == ["Engine Mount"]
    assert session.total == 45.0
    assert seen_at_request == [["Engine Mount"]]


# Audio path


def test_out_of_order_chunks_are_reordered(agent_config, job, policy):
    texts = {
        0: TranscriptionResult.success("checking the brakes", 0),
        1: TranscriptionResult.success("installing new brake pad forty five dollars", 1),
    }

    async def go():
        gate = asyncio.Event()
        transcriber = FakeTranscriber(texts, gates={0: gate})
        session = make_session(agent_config, job, policy, transcriber=transcriber)
        session.start_recording()
        first = session.accept_chunk(chunk(0))
        second = session.accept_chunk(chunk(1))
        await second
        held = [e.text for e in session.transcript]
        gate.set()
        await first
        await session.tasks.drain()
        return session, held

    session, held = asyncio.run(go())
    assert held == []
    assert [e.text for e in session.transcript] == [
        "checking the brakes",
        "installing new brake pad forty five dollars",
    ]
    assert [e.sequence for e in session.transcript] == [0, 1]
    assert [(i.name, i.price) for i in session.items] == [("Brake Pad", 45.0)]


def test_push_audio_and_stop_flushes_remainder(agent_config, job, policy):
    texts = {
        0: TranscriptionResult.success("installing new engine mount", 0),
        1: TranscriptionResult.success("that is it for now", 1),
    }
    transcriber = FakeTranscriber(texts)

    async def go():
        session = make_session(agent_config, job, policy, transcriber=transcriber)
        session.start_recording()
        # 1.5 s interval chunk plus a 0.5 s remainder
        session.push_audio(np.full(32000, 0.3, dtype=np.float32))
        await session.stop_recording()
        await session.tasks.drain()
        return session

    session = asyncio.run(go())
    assert transcriber.seen == [0, 1]
    assert [e.text for e in session.transcript] == ["installing new engine mount", "that is it for now"]
    assert [i.name for i in session.items] == ["Engine Mount"]
    assert not session.recording


def test_silence_produces_no_chunks(agent_config, job, policy):
    transcriber = FakeTranscriber({})

    async def go():
        session = make_session(agent_config, job, policy, transcriber=transcriber)
        session.start_recording()
        session.push_audio(np.zeros(48000, dtype=np.float32))
        await session.stop_recording()
        return session

    session = asyncio.run(go())
    assert transcriber.seen == []
    assert session.transcript == []


def test_repeated_errors_surface_once(agent_config, job, policy):
    errors = []
    texts = {
        0: TranscriptionResult.failure("unusual activity detected", ACCOUNT_RESTRICTED, 0),
        1: TranscriptionResult.failure("account restricted (free tier)", ACCOUNT_RESTRICTED, 1),
        2: TranscriptionResult.success("checking the alternator", 2),
    }

    async def go():
        session = make_session(agent_config, job, policy, transcriber=FakeTranscriber(texts), on_error=errors.append)
        session.start_recording()
        await asyncio.gather(*(session.accept_chunk(chunk(i)) for i in range(3)))
        await session.tasks.drain()
        return session

    session = asyncio.run(go())
    assert len(errors) == 1
    assert errors[0].guidance
    # failed chunks do not hold back later text
    assert [e.text for e in session.transcript] == ["checking the alternator"]
    assert session.customer_status == "Technician is diagnosing the issue..."


def test_reset_drops_late_results(agent_config, job, policy):
    texts = {0: TranscriptionResult.success("installing new battery", 0)}

    async def go():
        gate = asyncio.Event()
        session = make_session(agent_config, job, policy, transcriber=FakeTranscriber(texts, gates={0: gate}))
        session.start_recording()
        late = session.accept_chunk(chunk(0))
        await asyncio.sleep(0)
        session.reset()
        gate.set()
        await late
        await session.tasks.drain()
        return session

    session = asyncio.run(go())
    assert session.transcript == []
    assert session.items == ()
    assert session.customer_status == "Waiting to start..."


# Manual actions


def test_free_restore_and_labor_edits_notify(agent_config, job, policy, make_item):
    notifier = RecordingNotifier()
    session = make_session(agent_config, job, policy, notifier=notifier)

    async def go():
        battery = session.add_item(make_item("Battery", 140))
        labor = session.add_labor(2, "Swapped the battery")
        session.make_free(battery.id)
        free_total = session.total
        session.restore_item(battery.id)
        session.update_labor_description(labor.id, "Swapped battery and cleaned terminals")
        await session.tasks.drain()
        return labor, free_total

    labor, free_total = asyncio.run(go())
    assert labor.name == "Labor (2 Hours)"
    assert labor.price == 170.0
    assert free_total == 170.0
    assert session.total == 310.0
    assert [action for action, *_ in notifier.calls] == [ITEM_ADDED, ITEM_ADDED, ITEM_MADE_FREE, ITEM_UPDATED, LABOR_UPDATED]


def test_complete_job_sends_summary(agent_config, job, policy, make_item):
    notifier = RecordingNotifier()
    session = make_session(agent_config, job, policy, notifier=notifier)

    async def go():
        session.add_item(make_item("Oil Filter", 8))
        await session.ingest_text("Installing new engine mount, forty five dollars")
        return await session.complete_job()

    assert asyncio.run(go()) is True
    items, total, summary_job = notifier.summaries[0]
    assert [i.name for i in items] == ["Oil Filter", "Engine Mount"]
    assert total == 53.0
    assert summary_job == job
    assert session.customer_status.startswith("Job complete")


# Helpers


def test_sequencer_releases_in_order():
    seq = TranscriptSequencer()
    assert seq.submit(1, "b") == []
    assert seq.submit(2, None) == []
    assert seq.submit(0, "a") == [(0, "a"), (1, "b")]
    assert seq.submit(4, "e") == []
    assert seq.drain() == [(4, "e")]
    assert seq.submit(5, "f") == [(5, "f")]


def test_customer_status():
    assert customer_status_for("Checking the pads") == "Technician is diagnosing the issue..."
    assert customer_status_for("replacing the belt") == "Technician is replacing parts..."
    assert customer_status_for("hello") is None
