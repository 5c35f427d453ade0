"""Settings for one exchange."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


DEFAULT_RELAY_URL = "http://localhost:8000"
SIGNAL_EVENT = "signal"


class ExchangeConfig(BaseModel):
    debounce: float = Field(0.1, ge=0, description="Send batching window in seconds")
    # None keeps a request pending until it connects, fails or is disposed
    request_timeout: Optional[float] = Field(None, gt=0)
    # None disables re-evaluating presence after a failed request
    retry_delay: Optional[float] = Field(None, ge=0)
    signal_event: str = SIGNAL_EVENT
    nickname: Optional[str] = Field(None, max_length=64)
