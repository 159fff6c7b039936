"""
Analytical sink forwarder.

Writes a normalized batch to the events API as a single NDJSON request. This is
the only storage write in the synchronous phase; if it fails, the whole
ingestion fails.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from observa import config
from observa.errors import SinkWriteError

logger = logging.getLogger(__name__)


def to_ndjson(rows: list[dict[str, Any]]) -> str:
    """One JSON object per line, trailing newline included."""
    return "\n".join(json.dumps(row, ensure_ascii=False) for row in rows) + "\n"


class SinkForwarder:
    """Forwards normalized rows to the analytical store."""

    def __init__(
        self,
        host: str | None = None,
        token: str | None = None,
        datasource: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        self.host = (host or config.SINK_HOST).rstrip("/")
        self.token = token if token is not None else config.SINK_TOKEN
        self.datasource = datasource or config.SINK_DATASOURCE
        self.timeout = timeout or config.SINK_TIMEOUT_SECONDS
        self._client = client

    @property
    def url(self) -> str:
        return f"{self.host}/v0/events"

    async def forward(self, rows: list[dict[str, Any]]) -> None:
        """
        POST ``rows`` as NDJSON.

        Raises:
            SinkWriteError: transport failure, non-2xx status, or an error body
        """
        if not rows:
            return

        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/x-ndjson",
        }
        params = {"name": self.datasource, "format": "ndjson"}
        body = to_ndjson(rows)

        try:
            if self._client is not None:
                response = await self._client.post(
                    self.url, params=params, headers=headers, content=body
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(
                        self.url, params=params, headers=headers, content=body
                    )
        except httpx.HTTPError as e:
            logger.error("Sink request failed for %d rows: %s", len(rows), e)
            raise SinkWriteError(f"Failed to forward events to sink: {e}") from e

        if response.is_error:
            logger.error(
                "Sink rejected batch: status=%d body=%s",
                response.status_code,
                response.text[:500],
            )
            raise SinkWriteError(
                f"Sink API error: {response.status_code} {response.reason_phrase}"
            )

        self._check_body(response)
        logger.debug("Forwarded %d rows to %s", len(rows), self.datasource)

    @staticmethod
    def _check_body(response: httpx.Response) -> None:
        # A 2xx can still carry an error payload
        try:
            payload = response.json()
        except ValueError:
            return
        if isinstance(payload, dict) and (payload.get("error") or payload.get("errors")):
            detail = payload.get("error") or payload.get("errors")
            logger.error("Sink returned error body: %s", detail)
            raise SinkWriteError(f"Sink error: {detail}")
