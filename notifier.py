from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

import httpx

from config import NotifierConfig
from models import InvoiceItem, ItemType, JobContext

__all__ = [
    "ITEM_ADDED",
    "ITEM_UPDATED",
    "ITEM_REMOVED",
    "ITEM_MADE_FREE",
    "LABOR_UPDATED",
    "ExplanationClient",
    "WebhookNotifier",
    "format_item_message",
    "format_summary_message",
]

NOTIFY_LOG = logging.getLogger("invoice_agent.notify")

ITEM_ADDED = "item_added"
ITEM_UPDATED = "item_updated"
ITEM_REMOVED = "item_removed"
ITEM_MADE_FREE = "item_made_free"
LABOR_UPDATED = "labor_updated"
ACTIONS = (ITEM_ADDED, ITEM_UPDATED, ITEM_REMOVED, ITEM_MADE_FREE, LABOR_UPDATED)

GEMINI_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"


def _local_stamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _job_lines(job: Optional[JobContext]) -> str:
    if job is None:
        return ""
    lines = ""
    if job.job_number:
        lines += f"Job #{job.job_number}\n"
    if job.customer:
        lines += f"Customer: {job.customer}\n"
    if job.vehicle:
        lines += f"Vehicle: {job.vehicle}\n"
    return lines


def format_item_message(action: str, item: InvoiceItem, job: Optional[JobContext] = None, explanation: str = "") -> str:
    if action == ITEM_ADDED and item.type is ItemType.LABOR:
        message = (
            "🔧 *New Labor Added*\n\n"
            f"*Work:* {item.name}\n"
            f"*Hours:* {item.hours or 1:g}\n"
            f"*Price:* ${item.price:.2f}\n"
        )
        if item.labor_description:
            message += f"*Description:* {item.labor_description}\n"
        if explanation:
            message += f"\n*What's happening:* {explanation}\n"
    elif action == ITEM_ADDED:
        message = (
            "🔧 *New Item Added*\n\n"
            f"*Item:* {item.name}\n"
            f"*Type:* {item.type.value}\n"
            f"*Price:* ${item.price:.2f}\n"
        )
        if item.description:
            message += f"*Description:* {item.description}\n"
        if item.category:
            message += f"*Category:* {item.category}\n"
        if item.quantity > 1:
            message += f"*Quantity:* {item.quantity}\n"
        if explanation:
            message += f"\n*What's happening:* {explanation}\n"
    elif action == ITEM_UPDATED:
        message = f"✏️ *Item Updated*\n\n*Item:* {item.name}\n*Price:* ${item.price:.2f}\n"
        if item.description:
            message += f"*Description:* {item.description}\n"
    elif action == LABOR_UPDATED:
        message = f"✏️ *Labor Entry Updated*\n\n*Work:* {item.name}\n"
        if item.labor_description:
            message += f"*Updated Description:* {item.labor_description}\n"
        if item.description:
            message += f"*Details:* {item.description}\n"
        message += f"*Total:* ${item.price:.2f}\n"
        if explanation:
            message += f"\n*What's happening:* {explanation}\n"
    elif action == ITEM_MADE_FREE:
        message = (
            "🎁 *Item Made Free*\n\n"
            f"*Item:* {item.name}\n"
            f"*Type:* {item.type.value}\n"
            "*Status:* FREE (No charge)\n"
        )
    elif action == ITEM_REMOVED:
        message = f"🗑️ *Item Removed*\n\n*Item:* {item.name}\n*Type:* {item.type.value}\n"
    else:
        raise ValueError(f"unknown notification action: {action}")

    job_lines = _job_lines(job)
    if job_lines:
        message += "\n*Job Info:*\n" + job_lines
    message += f"\n*Time:* {_local_stamp()}"
    return message


def format_summary_message(items: Sequence[InvoiceItem], total: float, job: Optional[JobContext] = None) -> str:
    message = "✅ *Job Completed - Invoice Summary*\n\n"
    job_lines = _job_lines(job)
    if job_lines:
        message += "*Job Info:*\n" + job_lines + "\n"
    message += "*Items:*\n"
    for index, item in enumerate(items, start=1):
        message += f"{index}. {item.name}"
        if item.labor_description:
            message += f"\n   Work: {item.labor_description}"
        elif item.description:
            message += f"\n   {item.description}"
        price = "FREE" if item.price == 0 else f"${item.price:.2f}"
        message += f"\n   {price}\n\n"
    message += f"*Total: ${total:.2f}*\n\n"
    message += f"*Time:* {_local_stamp()}"
    return message


class ExplanationClient:
    """Short customer-facing explanation of a line item from Gemini."""

    def __init__(self, config: NotifierConfig, client: httpx.AsyncClient):
        self.cfg = config
        self.client = client

    @property
    def available(self) -> bool:
        return bool(self.cfg.gemini_key)

    @staticmethod
    def build_prompt(item: InvoiceItem, transcript: Optional[str] = None) -> str:
        lines = [
            "You are a helpful automotive service assistant. Generate a clear, customer-friendly "
            "explanation of what the technician is doing with this invoice item.",
            "",
            f"Item: {item.name}",
            f"Type: {item.type.value}",
        ]
        if item.category:
            lines.append(f"Category: {item.category}")
        if item.description:
            lines.append(f"Description: {item.description}")
        if item.labor_description:
            lines.append(f"Work: {item.labor_description}")
        if transcript:
            lines.append(f'Context from transcript: "{transcript[:200]}"')
        lines += [
            "",
            "Generate a brief (1-2 sentences) explanation of what work is being performed or what "
            "part is being installed. Return only the explanation text, no additional formatting.",
        ]
        return "\n".join(lines)

    async def explain(self, item: InvoiceItem, transcript: Optional[str] = None) -> str:
        response = await self.client.post(
            GEMINI_ENDPOINT.format(model=self.cfg.gemini_model),
            params={"key": self.cfg.gemini_key},
            json={
                "contents": [{"parts": [{"text": self.build_prompt(item, transcript)}]}],
                "generationConfig": {"temperature": 0.5, "maxOutputTokens": 150},
            },
        )
        response.raise_for_status()
        data = response.json()
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return str(parts[0].get("text") or "").strip() if parts else ""


class WebhookNotifier:
    """Best-effort status messages to the job's messaging webhook."""

    def __init__(self, config: Optional[NotifierConfig] = None, *, client: Optional[httpx.AsyncClient] = None):
        self.cfg = config or NotifierConfig.from_env()
        self._client = client
        self._owns_client = client is None
        self._warned_missing_url = False

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.cfg.timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    @property
    def enabled(self) -> bool:
        if self.cfg.webhook_url:
            return True
        if not self._warned_missing_url:
            NOTIFY_LOG.warning("Webhook URL not configured; set INVOICE_WEBHOOK_URL to send updates")
            self._warned_missing_url = True
        return False

    async def _explanation(self, item: InvoiceItem, transcript: Optional[str]) -> str:
        fallback = item.labor_description or item.description or ""
        explainer = ExplanationClient(self.cfg, self._http())
        if not explainer.available:
            return fallback
        try:
            text = await asyncio.wait_for(explainer.explain(item, transcript), timeout=self.cfg.explain_timeout_s)
        except asyncio.TimeoutError:
            NOTIFY_LOG.info("explanation timed out after %.1fs for %s", self.cfg.explain_timeout_s, item.name)
            return fallback
        except Exception as exc:  # noqa: BLE001 - any reply shape may be off
            NOTIFY_LOG.warning("explanation failed for %s: %s", item.name, exc)
            return fallback
        return text or fallback

    async def _post(self, payload: Dict[str, Any]) -> bool:
        response = await self._http().post(self.cfg.webhook_url, json=payload)
        if response.status_code >= 300:
            NOTIFY_LOG.error("webhook error %s: %s", response.status_code, response.text[:300])
            return False
        return True

    async def notify(
        self,
        action: str,
        item: InvoiceItem,
        job: Optional[JobContext] = None,
        transcript_excerpt: Optional[str] = None,
    ) -> bool:
        """Send one item update. Returns False on any failure; never raises."""
        if not self.enabled:
            return False
        try:
            explanation = ""
            if action in (ITEM_ADDED, LABOR_UPDATED):
                explanation = await self._explanation(item, transcript_excerpt)
            payload = {
                "message": format_item_message(action, item, job, explanation),
                "item": item.to_payload(),
                "action": action,
                "timestamp": _iso_now(),
            }
            if job is not None:
                payload["jobInfo"] = job.to_payload()
            NOTIFY_LOG.info("sending %s for %s", action, item.name)
            sent = await self._post(payload)
        except Exception as exc:  # noqa: BLE001 - webhook failures must not reach invoice logic
            NOTIFY_LOG.error("error sending webhook update: %s", exc)
            return False
        if sent:
            NOTIFY_LOG.info("webhook update sent")
        return sent

    async def notify_summary(self, items: Sequence[InvoiceItem], total: float, job: Optional[JobContext] = None) -> bool:
        if not self.enabled:
            return False
        try:
            payload = {
                "message": format_summary_message(items, total, job),
                "items": [item.to_payload() for item in items],
                "total": total,
                "timestamp": _iso_now(),
                "jobInfo": job.to_payload() if job is not None else None,
            }
            sent = await self._post(payload)
        except Exception as exc:  # noqa: BLE001
            NOTIFY_LOG.error("error sending job summary: %s", exc)
            return False
        if sent:
            NOTIFY_LOG.info("job summary sent")
        return sent
