from __future__ import annotations

import base64
import binascii
import logging
from typing import Callable, Dict, Iterable, List

from billing_recon.core.codec import DISCRIMINATOR_LEN, BorshReader, event_discriminator
from billing_recon.core.errors import DecodeError
from billing_recon.models import (
    ActivationEvent,
    DueEntry,
    LedgerEvent,
    SubscriptionCancellationRequested,
    SubscriptionPaymentRecorded,
    SubscriptionsDue,
    SubscriptionStatus,
    UnrecognizedEvent,
)

logger = logging.getLogger(__name__)

PROGRAM_DATA_PREFIX = "Program data: "


def _due_entry(r: BorshReader) -> DueEntry:
    return DueEntry(
        user=r.pubkey(),
        subscription_id=r.u64(),
        service_id=r.u64(),
        service_name=r.string(),
        monthly_price=r.u64(),
        recipient_type=r.string(),
        receiver=r.string(),
        due_ts=r.i64(),
        initial_payment_recorded=r.bool(),
    )


def _subscriptions_due(r: BorshReader) -> SubscriptionsDue:
    return SubscriptionsDue(entries=r.vec(_due_entry))


def _payment_recorded(r: BorshReader) -> SubscriptionPaymentRecorded:
    operator = r.pubkey()
    user = r.pubkey()
    subscription_id = r.u64()
    status_raw = r.string()
    try:
        status = SubscriptionStatus(status_raw)
    except ValueError as exc:
        raise DecodeError(f"unknown settlement status {status_raw!r}") from exc
    return SubscriptionPaymentRecorded(
        operator=operator,
        user=user,
        subscription_id=subscription_id,
        status=status,
        paid_ts=r.i64(),
    )


def _activated(r: BorshReader) -> ActivationEvent:
    return ActivationEvent(
        user=r.pubkey(),
        subscription_id=r.u64(),
        service_id=r.u64(),
        monthly_price=r.u64(),
        recipient_type=r.string(),
        receiver=r.string(),
    )


def _cancellation_requested(r: BorshReader) -> SubscriptionCancellationRequested:
    return SubscriptionCancellationRequested(
        user=r.pubkey(),
        subscription_id=r.u64(),
        service_id=r.u64(),
        monthly_price=r.u64(),
        pending_until_ts=r.i64(),
    )


EVENT_DECODERS: Dict[bytes, Callable[[BorshReader], LedgerEvent]] = {
    event_discriminator("SubscriptionsDue"): _subscriptions_due,
    event_discriminator("SubscriptionPaymentRecorded"): _payment_recorded,
    event_discriminator("SubscriptionActivated"): _activated,
    event_discriminator("SubscriptionCancellationRequested"): _cancellation_requested,
}


def decode_event(encoded: str) -> LedgerEvent:
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        return UnrecognizedEvent(reason=f"invalid base64: {exc}", raw=encoded)

    if len(data) < DISCRIMINATOR_LEN:
        return UnrecognizedEvent(reason="payload shorter than discriminator", raw=encoded)

    disc = data[:DISCRIMINATOR_LEN]
    decoder = EVENT_DECODERS.get(disc)
    if decoder is None:
        return UnrecognizedEvent(discriminator=disc.hex(), reason="unknown event discriminator", raw=encoded)

    try:
        return decoder(BorshReader(data, DISCRIMINATOR_LEN))
    except (DecodeError, ValueError) as exc:
        return UnrecognizedEvent(discriminator=disc.hex(), reason=f"malformed event body: {exc}", raw=encoded)


def decode_logs(logs: Iterable[str], *, signature: str = "") -> List[LedgerEvent]:
    events: List[LedgerEvent] = []
    for line in logs or []:
        if not line.startswith(PROGRAM_DATA_PREFIX):
            continue
        event = decode_event(line[len(PROGRAM_DATA_PREFIX):].strip())
        if isinstance(event, UnrecognizedEvent):
            logger.warning(
                "Unrecognized ledger event in tx %s (discriminator=%s): %s",
                signature or "?",
                event.discriminator or "-",
                event.reason,
            )
        events.append(event)
    return events


def events_of_kind(events: Iterable[LedgerEvent], kind: str) -> List[LedgerEvent]:
    return [event for event in events if event.kind == kind]
