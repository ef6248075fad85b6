#!/usr/bin/env python3
"""Voice-to-invoice agent: headless CLI entrypoints."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from config import load_agent_config
from models import InvoiceItem, JobContext, TranscriptEntry
from session import AgentSession
from stt_core import TranscriptionResult


def _configure_logging(quiet: bool) -> None:
    logging.basicConfig(
        level=logging.WARNING if quiet else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # http client chatter drowns out the pipeline logs
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _job_from_args(args: argparse.Namespace) -> JobContext:
    base = JobContext.from_env()
    return JobContext(
        job_number=args.job or base.job_number,
        customer=args.customer or base.customer,
        vehicle=args.vehicle or base.vehicle,
    )


def format_invoice(items: Sequence[InvoiceItem], total: float) -> str:
    if not items:
        return "No items recorded."
    width = max(len(item.name) for item in items)
    lines: List[str] = []
    for item in items:
        price = "FREE" if item.price == 0 else f"${item.price:.2f}"
        lines.append(f"  {item.name.ljust(width)}  {item.type.value:<7}  {price:>10}")
    lines.append(f"  {'Total'.ljust(width)}  {'':<7}  {'$' + format(total, '.2f'):>10}")
    return "\n".join(lines)


def _print_entry(entry: TranscriptEntry) -> None:
    print(f"[{entry.timestamp}] {entry.text}")


def _print_items(items: List[InvoiceItem]) -> None:
    for item in items:
        print(f"  + {item.name} (${item.price:.2f}, {item.type.value})")


def _print_error(result: TranscriptionResult) -> None:
    print(f"Transcription error: {result.reason}", file=sys.stderr)
    if result.guidance:
        print(result.guidance, file=sys.stderr)


def _build_session(args: argparse.Namespace) -> AgentSession:
    return AgentSession(
        load_agent_config(),
        job=_job_from_args(args),
        on_error=_print_error,
        on_transcript=None if args.quiet else _print_entry,
        on_items=_print_items,
    )


async def _finish(session: AgentSession, complete: bool) -> None:
    await session.tasks.drain()
    if complete:
        await session.complete_job()
    print()
    print(format_invoice(session.items, session.total))
    await session.aclose()


# ---------------------------------------------------------------------------
# Commands


async def _record(args: argparse.Namespace) -> int:
    from mic_capture import MicrophoneCapture, pick_default_mic

    mic_idx = args.device_index if args.device_index is not None else pick_default_mic()
    if mic_idx is None:
        print("No microphone input device found.", file=sys.stderr)
        return 2

    loop = asyncio.get_running_loop()
    session = _build_session(args)
    stop_event = asyncio.Event()
    try:
        loop.add_signal_handler(signal.SIGINT, stop_event.set)
    except NotImplementedError:  # pragma: no cover - Windows event loops
        pass

    capture = MicrophoneCapture(session.push_audio, loop=loop, device_idx=mic_idx)
    session.start_recording()
    capture.start()
    if not args.quiet:
        job = session.job
        print(f"Job #{job.job_number} - {job.customer} - {job.vehicle}")
        print("Listening… (Ctrl+C to stop)")

    try:
        await stop_event.wait()
    finally:
        capture.stop()
        # let frames already scheduled by the audio callback land
        await asyncio.sleep(0)
        await session.stop_recording()

    await _finish(session, args.complete)
    return 0


def _read_lines(source: str) -> List[str]:
    if source == "-":
        return [line for line in sys.stdin.read().splitlines() if line.strip()]
    path = Path(source)
    if not path.exists():
        raise FileNotFoundError(f"Narration file not found: {path}")
    return [line for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


async def _replay(args: argparse.Namespace) -> int:
    try:
        lines = _read_lines(args.source)
    except (OSError, UnicodeDecodeError) as exc:
        print(exc, file=sys.stderr)
        return 2

    session = _build_session(args)
    for line in lines:
        await session.ingest_text(line, force=args.no_debounce)
    await _finish(session, args.complete)
    return 0


def _devices(_args: argparse.Namespace) -> int:
    from mic_capture import list_input_devices

    for dev in list_input_devices():
        print(f"{dev['index']:>3}  {dev['name']} ({dev['channels']} ch)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Narrate a repair job → live invoice + customer updates")
    parser.add_argument("--quiet", action="store_true", help="Reduce console logs")
    parser.add_argument("--job", default=None, help="Job number (default: JOB_NUMBER)")
    parser.add_argument("--customer", default=None, help="Customer name (default: JOB_CUSTOMER)")
    parser.add_argument("--vehicle", default=None, help="Vehicle (default: JOB_VEHICLE)")
    sub = parser.add_subparsers(dest="command", required=True)

    rec = sub.add_parser("record", help="Capture the microphone until Ctrl+C")
    rec.add_argument("--device-index", type=int, default=None, help="Mic device index (default: system default)")
    rec.add_argument("--complete", action="store_true", help="Send the job summary when recording stops")
    rec.set_defaults(handler=_record)

    rep = sub.add_parser("replay", help="Feed narration lines from a file (or - for stdin)")
    rep.add_argument("source", help="Text file with one narration line per row, or -")
    rep.add_argument("--complete", action="store_true", help="Send the job summary at the end")
    rep.add_argument("--no-debounce", action="store_true", help="Run extraction for every line")
    rep.set_defaults(handler=_replay)

    dev = sub.add_parser("devices", help="List audio input devices")
    dev.set_defaults(handler=_devices)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    _configure_logging(args.quiet)
    if args.command == "devices":
        return args.handler(args)
    return asyncio.run(args.handler(args))


if __name__ == "__main__":
    raise SystemExit(main())
