from __future__ import annotations

import threading
import time
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

__all__ = ["ItemType", "InvoiceItem", "TranscriptEntry", "JobContext", "next_item_id"]


_id_lock = threading.Lock()
_last_id = 0


def next_item_id() -> int:
    """Millisecond timestamp, bumped so ids never repeat within the process."""
    global _last_id
    with _id_lock:
        candidate = int(time.time() * 1000)
        if candidate <= _last_id:
            candidate = _last_id + 1
        _last_id = candidate
        return candidate


class ItemType(str, Enum):
    PART = "part"
    LABOR = "labor"
    SERVICE = "service"


class InvoiceItem(BaseModel):
    """One invoice line. Wire format (LLM output, webhook) is camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: int = Field(default_factory=next_item_id)
    name: str
    price: float = 0.0
    type: ItemType = ItemType.PART
    description: Optional[str] = None
    labor_description: Optional[str] = None
    quantity: int = 1
    hours: Optional[float] = None
    unit: Optional[str] = None
    image_url: Optional[str] = None
    part_number: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def _clean_name(cls, value: Any) -> str:
        text = " ".join(str(value or "").split())
        if not text:
            raise ValueError("item name is empty")
        return text

    @field_validator("price", mode="before")
    @classmethod
    def _lenient_price(cls, value: Any) -> float:
        if value is None or value == "":
            return 0.0
        if isinstance(value, str):
            value = value.replace("$", "").replace(",", "").strip()
        try:
            price = float(value)
        except (TypeError, ValueError):
            return 0.0
        if price != price or price < 0:
            return 0.0
        return round(price, 2)

    @field_validator("type", mode="before")
    @classmethod
    def _lenient_type(cls, value: Any) -> str:
        if isinstance(value, ItemType):
            return value.value
        lowered = str(value or "").strip().lower()
        if lowered in {t.value for t in ItemType}:
            return lowered
        return ItemType.PART.value

    @field_validator("quantity", mode="before")
    @classmethod
    def _lenient_quantity(cls, value: Any) -> int:
        try:
            qty = int(float(value))
        except (TypeError, ValueError):
            return 1
        return qty if qty >= 1 else 1

    @field_validator("hours", mode="before")
    @classmethod
    def _lenient_hours(cls, value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            hours = float(value)
        except (TypeError, ValueError):
            return None
        return hours if hours > 0 else None

    @property
    def dedup_key(self) -> str:
        return self.name.casefold()

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TranscriptEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    timestamp: str = Field(default_factory=lambda: datetime.now().strftime("%H:%M:%S"))
    sequence: Optional[int] = None


class JobContext(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    job_number: Optional[str] = None
    customer: Optional[str] = None
    vehicle: Optional[str] = None

    @classmethod
    def from_env(cls) -> "JobContext":
        from config import JOB

        return cls(job_number=JOB["NUMBER"], customer=JOB["CUSTOMER"], vehicle=JOB["VEHICLE"])

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
