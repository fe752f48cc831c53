import base64

from solders.pubkey import Pubkey

from billing_recon.core.codec import BorshReader, BorshWriter, event_discriminator
from billing_recon.models import (
    ActivationEvent,
    SubscriptionCancellationRequested,
    SubscriptionPaymentRecorded,
    SubscriptionsDue,
    SubscriptionStatus,
    UnrecognizedEvent,
)
from billing_recon.services.events import decode_event, decode_logs, events_of_kind
from fakes import program_data


def _b64(event_name, body):
    return base64.b64encode(event_discriminator(event_name) + body).decode("ascii")


def test_discriminator_is_sha256_prefix():
    import hashlib

    assert event_discriminator("SubscriptionsDue") == hashlib.sha256(b"event:SubscriptionsDue").digest()[:8]


def test_borsh_primitives_are_little_endian():
    data = BorshWriter().u16(1).u64(2).i64(-1).string("hé").option_i64(None).option_i64(7).to_bytes()
    r = BorshReader(data)

    assert data[:2] == b"\x01\x00"
    assert r.u16() == 1
    assert r.u64() == 2
    assert r.i64() == -1
    assert r.string() == "hé"
    assert r.option(lambda rr: rr.i64()) is None
    assert r.option(lambda rr: rr.i64()) == 7
    assert r.remaining() == 0


def test_decodes_subscriptions_due():
    user = str(Pubkey.new_unique())
    body = (
        BorshWriter()
        .u32(1)
        .pubkey(user)
        .u64(4)
        .u64(2)
        .string("Netflix")
        .u64(15_990_000)
        .string("EMAIL")
        .string("payee@example.com")
        .i64(1_700_086_400)
        .bool(True)
        .to_bytes()
    )
    event = decode_event(_b64("SubscriptionsDue", body))

    assert isinstance(event, SubscriptionsDue)
    [entry] = event.entries
    assert entry.user == user
    assert entry.subscription_id == 4
    assert entry.service_name == "Netflix"
    assert entry.monthly_price == 15_990_000
    assert entry.due_ts == 1_700_086_400


def test_decodes_payment_recorded_status():
    operator, user = str(Pubkey.new_unique()), str(Pubkey.new_unique())
    body = BorshWriter().pubkey(operator).pubkey(user).u64(9).string("CANCELLED").i64(1_700_000_000).to_bytes()
    event = decode_event(_b64("SubscriptionPaymentRecorded", body))

    assert isinstance(event, SubscriptionPaymentRecorded)
    assert event.status is SubscriptionStatus.CANCELLED
    assert event.paid_ts == 1_700_000_000


def test_decodes_activation_and_cancellation():
    user = str(Pubkey.new_unique())
    activated = BorshWriter().pubkey(user).u64(1).u64(3).u64(30_000_000).string("PHONE").string("+15550100").to_bytes()
    cancelled = BorshWriter().pubkey(user).u64(1).u64(3).u64(30_000_000).i64(1_702_592_000).to_bytes()

    a = decode_event(_b64("SubscriptionActivated", activated))
    c = decode_event(_b64("SubscriptionCancellationRequested", cancelled))

    assert isinstance(a, ActivationEvent)
    assert a.recipient_type == "PHONE"
    assert isinstance(c, SubscriptionCancellationRequested)
    assert c.pending_until_ts == 1_702_592_000


def test_unknown_discriminator_is_unrecognized():
    event = decode_event(_b64("SomethingElse", b"\x00" * 4))
    assert isinstance(event, UnrecognizedEvent)
    assert event.reason == "unknown event discriminator"
    assert event.discriminator == event_discriminator("SomethingElse").hex()


def test_bad_base64_and_short_payload_are_unrecognized():
    bad = decode_event("not base64!!")
    short = decode_event(base64.b64encode(b"abc").decode("ascii"))

    assert isinstance(bad, UnrecognizedEvent)
    assert bad.reason.startswith("invalid base64")
    assert isinstance(short, UnrecognizedEvent)


def test_truncated_body_is_malformed():
    event = decode_event(_b64("SubscriptionPaymentRecorded", b"\x01\x02"))
    assert isinstance(event, UnrecognizedEvent)
    assert event.reason.startswith("malformed event body")


def test_unknown_status_string_is_malformed():
    operator, user = str(Pubkey.new_unique()), str(Pubkey.new_unique())
    body = BorshWriter().pubkey(operator).pubkey(user).u64(1).string("PAUSED").i64(0).to_bytes()
    event = decode_event(_b64("SubscriptionPaymentRecorded", body))
    assert isinstance(event, UnrecognizedEvent)
    assert "PAUSED" in event.reason


def test_decode_logs_keeps_only_program_data_lines(caplog):
    user = str(Pubkey.new_unique())
    cancel = BorshWriter().pubkey(user).u64(1).u64(3).u64(5).i64(10).to_bytes()
    logs = [
        "Program C1gJtFGfd2Tt3omV6eWvezeofymZbp7RYj94Hg4drWq1 invoke [1]",
        "Program log: Instruction: Unsubscribe",
        program_data("SubscriptionCancellationRequested", cancel),
        program_data("Mystery", b"\x00"),
        "Program C1gJtFGfd2Tt3omV6eWvezeofymZbp7RYj94Hg4drWq1 success",
    ]

    events = decode_logs(logs, signature="sig-1")

    assert [e.kind for e in events] == ["SubscriptionCancellationRequested", "Unrecognized"]
    assert len(events_of_kind(events, "SubscriptionCancellationRequested")) == 1
    assert "sig-1" in caplog.text


def test_decode_logs_tolerates_missing_logs():
    assert decode_logs(None) == []
