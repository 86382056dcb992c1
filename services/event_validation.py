"""Validation and identity for inbound event batches.

Envelope problems reject the whole batch with ``ValidationError``; problems in
a single event reject only that index so its siblings are still stored.
"""
import hashlib
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

import pydantic

from models.events import EventEnvelope, EventItem, EventResult, NormalizedEvent, ParsedEventBatch
from services.errors import ValidationError
from services.timeutil import parse_iso_datetime, utcnow, as_utc

logger = logging.getLogger(__name__)

FUTURE_SKEW = timedelta(minutes=5)


def first_error_message(exc: pydantic.ValidationError) -> str:
    """Human readable text of the first pydantic error."""
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    error = errors[0]
    if error.get("type") == "value_error" and error.get("ctx", {}).get("error") is not None:
        return str(error["ctx"]["error"])
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {error.get('msg')}" if location else str(error.get("msg"))


def derive_event_id(anonymous_user_id: str, session_id: str | None, install_id: str | None,
                    sent_at_raw: str | None, index: int, event_name: str, occurred_at_raw: str) -> str:
    """
    Deterministic UUID for an event that arrived without one.

    A client retrying the same batch gets the same ids, so the retry is absorbed
    by the unique event_id instead of duplicating rows.
    """
    seed = "|".join([
        anonymous_user_id,
        session_id or "",
        install_id or "",
        sent_at_raw or "",
        str(index),
        event_name,
        occurred_at_raw,
    ])
    digest = bytearray(hashlib.sha256(seed.encode("utf-8")).digest()[:16])
    digest[6] = (digest[6] & 0x0F) | 0x50  # version 5 layout
    digest[8] = (digest[8] & 0x3F) | 0x80  # RFC 4122 variant
    return str(uuid.UUID(bytes=bytes(digest)))


def _reject(index: int, error: str) -> EventResult:
    return EventResult(index=index, status="rejected", error=error)


def parse_event_batch(payload: Any, now: datetime | None = None) -> ParsedEventBatch:
    now = as_utc(now) if now else utcnow()

    if not isinstance(payload, dict):
        raise ValidationError("Invalid request body")
    try:
        envelope = EventEnvelope.model_validate(payload)
    except pydantic.ValidationError as e:
        raise ValidationError(first_error_message(e)) from e

    sent_at = None
    if envelope.sent_at is not None:
        sent_at = parse_iso_datetime(envelope.sent_at)
        if sent_at is None:
            raise ValidationError("sent_at must be an ISO datetime string")

    future_bound = now + FUTURE_SKEW
    accepted_events: list[NormalizedEvent] = []
    results: list[EventResult] = []

    for index, raw_event in enumerate(envelope.events):
        if not isinstance(raw_event, dict):
            results.append(_reject(index, "event must be an object"))
            continue
        try:
            item = EventItem.model_validate(raw_event)
        except pydantic.ValidationError as e:
            results.append(_reject(index, first_error_message(e)))
            continue

        occurred_at = parse_iso_datetime(item.occurred_at)
        if occurred_at is None:
            results.append(_reject(index, "occurred_at must be an ISO datetime string"))
            continue
        if occurred_at > future_bound:
            results.append(_reject(index, "occurred_at is too far in the future"))
            continue

        event_id = item.event_id or derive_event_id(
            envelope.anonymous_user_id, envelope.session_id, envelope.install_id,
            envelope.sent_at, index, item.event_name, item.occurred_at,
        )
        accepted_events.append(NormalizedEvent(
            index=index,
            event_id=event_id,
            event_name=item.event_name,
            occurred_at=occurred_at,
            properties=item.properties,
            context=item.context,
        ))
        results.append(EventResult(index=index, status="accepted", event_id=event_id))

    rejected = len(results) - len(accepted_events)
    if rejected:
        logger.debug("event batch: %d accepted, %d rejected", len(accepted_events), rejected)

    return ParsedEventBatch(
        anonymous_user_id=envelope.anonymous_user_id,
        session_id=envelope.session_id,
        install_id=envelope.install_id,
        platform=envelope.platform,
        app_version=envelope.app_version,
        sent_at=sent_at,
        accepted_events=accepted_events,
        results=results,
        accepted=len(accepted_events),
        rejected=rejected,
    )
