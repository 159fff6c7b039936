"""
Secret scrubbing for event attributes.

Scans every string under an event's ``attributes`` for credential-shaped
substrings and replaces them with a typed placeholder before anything reaches
the sink. The envelope is never touched.

Design principles:
- Pattern-based: a fixed, ordered set of credential signatures
- Never raises on well-formed input; non-string leaves pass through
- Records which secret kinds were found so the signal pipeline can flag the event
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from observa.events import CanonicalEvent, EventAttributes, ScrubbingMetadata

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

# Ordered: vendor-specific keys before generic bearer/email patterns
SECRET_PATTERNS: dict[str, tuple[re.Pattern, str]] = {
    "openai_key": (re.compile(r"sk-[a-zA-Z0-9]{32,}"), "[REDACTED_OPENAI_KEY]"),
    "api_key_sk": (re.compile(r"sk_[a-zA-Z0-9]{32,}"), "[REDACTED_API_KEY]"),
    "aws_access_key": (re.compile(r"AKIA[0-9A-Z]{16}", re.IGNORECASE), "[REDACTED_AWS_KEY]"),
    "aws_secret_key": (
        re.compile(
            r"aws[_ ]?secret[_ ]?access[_ ]?key[\s:=]+['\"]?[A-Za-z0-9/+=]{40}",
            re.IGNORECASE,
        ),
        "[REDACTED_AWS_SECRET]",
    ),
    "github_token": (re.compile(r"ghp_[a-zA-Z0-9]{36}"), "[REDACTED_GITHUB_TOKEN]"),
    "bearer_token": (
        re.compile(r"bearer[\s:]+['\"]?[A-Za-z0-9._-]{32,}", re.IGNORECASE),
        "[REDACTED_BEARER_TOKEN]",
    ),
    "connection_string": (
        re.compile(
            r"\b(?:postgres(?:ql)?|mysql|mongodb(?:\+srv)?|redis|amqps?)://[^\s:/@]+:[^\s@]+@[^\s'\"]+",
            re.IGNORECASE,
        ),
        "[REDACTED_CONNECTION_STRING]",
    ),
    "email": (
        re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"),
        "[REDACTED_EMAIL]",
    ),
    "credit_card": (re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b"), "[REDACTED_CC]"),
    "ssn": (re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[REDACTED_SSN]"),
}


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class ScrubResult:
    """Result of scrubbing a value (string, list, dict or primitive)."""

    value: Any
    secret_types: list[str] = field(default_factory=list)

    @property
    def scrubbed(self) -> bool:
        return bool(self.secret_types)


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


# =============================================================================
# Core Scrubbing Functions
# =============================================================================


def scrub_text(text: str | None) -> ScrubResult:
    """Redact every known secret pattern in ``text``."""
    if not text or not isinstance(text, str):
        return ScrubResult(value=text)

    found = []
    result = text
    for name, (pattern, replacement) in SECRET_PATTERNS.items():
        result, count = pattern.subn(replacement, result)
        if count:
            found.append(name)
    return ScrubResult(value=result, secret_types=found)


def scrub_value(value: Any) -> ScrubResult:
    """Recursively scrub strings inside dicts and lists. Keys are kept as-is."""
    if isinstance(value, str):
        return scrub_text(value)

    if isinstance(value, dict):
        found: list[str] = []
        scrubbed = {}
        for key, item in value.items():
            result = scrub_value(item)
            scrubbed[key] = result.value
            found.extend(result.secret_types)
        return ScrubResult(value=scrubbed, secret_types=_dedupe(found))

    if isinstance(value, list):
        found = []
        items = []
        for item in value:
            result = scrub_value(item)
            items.append(result.value)
            found.extend(result.secret_types)
        return ScrubResult(value=items, secret_types=_dedupe(found))

    # Numbers, booleans, None
    return ScrubResult(value=value)


def scrub_event(event: CanonicalEvent) -> CanonicalEvent:
    """Return a copy of ``event`` with secrets redacted from its attributes."""
    raw = event.attributes.model_dump(exclude_unset=True)
    result = scrub_value(raw)
    metadata = ScrubbingMetadata(
        contains_secrets=result.scrubbed,
        secret_types=result.secret_types,
    )
    if not result.scrubbed:
        return event.with_attributes(event.attributes, metadata)

    logger.warning(
        "SECRET_SCRUBBED: trace=%s span=%s event_type=%s types=%s",
        event.trace_id,
        event.span_id,
        event.event_type.value,
        result.secret_types,
    )
    # Replacements are plain strings, so the scrubbed bag re-validates cleanly
    attributes = EventAttributes.model_validate(result.value)
    return event.with_attributes(attributes, metadata)


def scrub_events(events: list[CanonicalEvent]) -> list[CanonicalEvent]:
    scrubbed = [scrub_event(event) for event in events]
    flagged = sum(1 for event in scrubbed if event.scrubbing.contains_secrets)
    if flagged:
        logger.info("Scrubbed secrets from %d of %d events", flagged, len(scrubbed))
    return scrubbed
