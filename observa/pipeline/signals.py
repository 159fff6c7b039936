"""
Signal pipeline client.

Hands the normalized batch to the external signal-detection service. Detection
heuristics live in that service; the only signal derived here is
``contains_secrets``, from the scrubber's per-event metadata.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any

import httpx

from observa import config
from observa.events import CanonicalEvent

logger = logging.getLogger(__name__)


@dataclass
class Signal:
    tenant_id: str
    project_id: str
    trace_id: str
    span_id: str
    signal_name: str
    signal_type: str
    signal_value: Any
    signal_severity: str
    timestamp: str
    metadata: dict[str, Any] = field(default_factory=dict)


def secret_signals(events: list[CanonicalEvent]) -> list[Signal]:
    """One ``contains_secrets`` signal per event the scrubber redacted."""
    signals = []
    for event in events:
        scrubbing = event.scrubbing
        if not scrubbing.contains_secrets:
            continue
        signals.append(
            Signal(
                tenant_id=event.tenant_id,
                project_id=event.project_id,
                trace_id=event.trace_id,
                span_id=event.span_id,
                signal_name="contains_secrets",
                signal_type="security",
                signal_value=True,
                signal_severity="high",
                timestamp=event.timestamp,
                metadata={
                    "event_type": event.event_type.value,
                    "secret_types": list(scrubbing.secret_types),
                },
            )
        )
    return signals


class SignalEmitter:
    """Posts normalized rows (plus locally derived signals) to the signal service."""

    def __init__(
        self,
        url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.url = url if url is not None else config.SIGNALS_SERVICE_URL
        self.timeout = timeout
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def emit(self, rows: list[dict[str, Any]], events: list[CanonicalEvent]) -> int:
        """
        Send the batch for signal detection.

        Returns the number of locally derived signals sent. Raises on transport
        or HTTP errors; callers run this as a best-effort job.
        """
        signals = secret_signals(events)
        if signals:
            logger.info("Derived %d contains_secrets signals", len(signals))

        if not self.enabled:
            logger.debug("Signal service not configured, skipping %d rows", len(rows))
            return 0

        payload = {"events": rows, "signals": [asdict(s) for s in signals]}
        if self._client is not None:
            response = await self._client.post(self.url, json=payload)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload)
        response.raise_for_status()
        return len(signals)
