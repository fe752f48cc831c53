from __future__ import annotations

import itertools

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from billing_recon.core.errors import PreconditionError
from billing_recon.core.time import Deadline
from billing_recon.models import SubscriptionStatus
from billing_recon.services.due_scan import DueSubscriptionScanner
from billing_recon.services.ledger import LedgerClient
from billing_recon.services.resolution import Resolver
from billing_recon.services.settlement import SettlementRecorder
from fakes import (
    BILLING_PERIOD,
    FakeGateway,
    FakeLedger,
    FakeRpc,
    account_info,
    encode_config,
    make_settings,
)

PRICE = 30_000_000


def _scanner(ledger, gateway, **overrides):
    overrides.setdefault("look_ahead_seconds", 0)
    resolver = Resolver(gateway, SettlementRecorder(ledger), path="due")
    return DueSubscriptionScanner(ledger, resolver, make_settings(**overrides))


def _ledger(users=("user-a",)):
    ledger = FakeLedger()
    sid = ledger.add_service("Spotify", PRICE)
    for user in users:
        ledger.subscribe(user, sid)
    return ledger


def _sub(ledger, user="user-a", sub_id=0):
    return ledger.accounts[user].find(sub_id)


def test_due_subscription_is_paid_then_advanced(gateway):
    ledger = _ledger()
    t = _sub(ledger).next_billing_ts
    ledger.now = t

    report = _scanner(ledger, gateway).run()

    assert report.entries_found == 1 and report.settled == 1 and report.ok
    [paid] = gateway.payouts
    assert paid.monthly_price == PRICE and paid.due_ts == t
    assert _sub(ledger).last_payment_ts == t
    assert _sub(ledger).next_billing_ts == t + BILLING_PERIOD

    ledger.now = t + 1
    assert _scanner(ledger, gateway, look_ahead_seconds=100).run().entries_found == 0

    ledger.now = t + BILLING_PERIOD - 3600
    assert _scanner(ledger, gateway, look_ahead_seconds=7200).run().entries_found == 1
    assert len(gateway.payouts) == 2


def test_rerun_at_same_instant_pays_nothing(gateway):
    ledger = _ledger()
    ledger.now = _sub(ledger).next_billing_ts

    _scanner(ledger, gateway).run()
    second = _scanner(ledger, gateway).run()

    assert second.entries_found == 0
    assert len(gateway.payouts) == 1


def test_look_ahead_window_boundary(gateway):
    ledger = _ledger(users=("inside", "outside"))
    ledger.now = 1_800_000_000
    look_ahead = 3600
    _sub(ledger, "inside").next_billing_ts = ledger.now + look_ahead - 1
    _sub(ledger, "outside").next_billing_ts = ledger.now + look_ahead + 1

    _scanner(ledger, gateway, look_ahead_seconds=look_ahead).run()

    assert [e.user for e in gateway.payouts] == ["inside"]


def test_accounts_are_scanned_in_ordered_chunks(gateway):
    users = [f"user-{i:02d}" for i in range(35)]
    ledger = _ledger(users=users)

    report = _scanner(ledger, gateway, batch_size=16).run()

    assert [len(b) for b in ledger.find_due_batches] == [16, 16, 3]
    assert [u for b in ledger.find_due_batches for u in b] == users
    assert report.accounts_scanned == 35 and report.chunks == 3
    assert gateway.payouts == []


def test_pending_cancellation_closes_on_final_settlement(gateway):
    ledger = _ledger()
    ledger.now += 100
    ledger.unsubscribe("user-a", 0)
    account = ledger.accounts["user-a"]
    assert account.total_pending_commitment == PRICE and account.total_active_commitment == 0

    ledger.now = _sub(ledger).next_billing_ts
    report = _scanner(ledger, gateway).run()

    assert report.settled == 1
    assert _sub(ledger).status is SubscriptionStatus.CANCELLED
    assert account.total_pending_commitment == 0

    ledger.now += 3 * BILLING_PERIOD
    assert _scanner(ledger, gateway).run().entries_found == 0
    assert len(gateway.payouts) == 1


def test_payout_failure_isolated_to_its_entry():
    ledger = _ledger(users=("user-a", "user-b"))
    ledger.now += BILLING_PERIOD
    gateway = FakeGateway(fail_for={0})
    ledger.accounts["user-b"].subscriptions[0].id = 5

    report = _scanner(ledger, gateway).run()

    assert [e.user for e in gateway.payouts] == ["user-b"]
    assert [c[0] for c in ledger.record_calls] == ["user-b"]
    assert [(f.user, f.stage) for f in report.failures] == [("user-a", "payout")]
    assert report.settled == 1
    assert not report.ok and not report.aborted


def test_fail_fast_stops_after_first_failure():
    ledger = _ledger(users=("user-a", "user-b"))
    ledger.now += BILLING_PERIOD

    report = _scanner(ledger, FakeGateway(fail_for={0}), fail_fast=True).run()

    assert report.aborted
    assert len(report.failures) == 1
    assert ledger.record_calls == []


def test_settlement_failure_continues_with_next_entry(gateway):
    ledger = _ledger(users=("user-a", "user-b"))
    ledger.now += BILLING_PERIOD
    ledger.fail_record_for.add(("user-a", 0))

    report = _scanner(ledger, gateway).run()

    assert len(gateway.payouts) == 2
    assert report.settled == 1
    assert report.failures[0].stage == "settlement"


def test_expired_deadline_stops_before_first_chunk(gateway):
    ledger = _ledger()
    ledger.now += BILLING_PERIOD
    clock = itertools.chain([0.0], itertools.repeat(10.0))

    report = _scanner(ledger, gateway).run(deadline=Deadline(5, clock=lambda: next(clock)))

    assert report.deadline_exceeded and not report.ok
    assert ledger.find_due_batches == []
    assert gateway.payouts == []


def test_deadline_checked_between_entries(gateway):
    ledger = _ledger(users=("user-a", "user-b"))
    ledger.now += BILLING_PERIOD
    # construction, chunk check, first entry check, then expired
    clock = itertools.chain([0.0, 0.0, 0.0], itertools.repeat(10.0))

    report = _scanner(ledger, gateway).run(deadline=Deadline(5, clock=lambda: next(clock)))

    assert report.deadline_exceeded
    assert len(gateway.payouts) == 1 and report.settled == 1


def test_paused_program_is_rejected(gateway):
    ledger = _ledger()
    ledger.config.paused = True

    with pytest.raises(PreconditionError):
        _scanner(ledger, gateway).run()
    assert ledger.find_due_batches == []


def test_wrong_signer_is_rejected(gateway):
    ledger = FakeLedger(signer="someone-else")

    with pytest.raises(PreconditionError):
        _scanner(ledger, gateway).run()


def test_no_accounts_is_a_clean_run(gateway):
    report = _scanner(FakeLedger(), gateway).run()
    assert report.ok and report.accounts_scanned == 0 and report.chunks == 0


def test_unreadable_due_scan_transaction_fails_the_run(gateway):
    signer = Keypair()
    rpc = FakeRpc(
        {
            "getAccountInfo": account_info(encode_config(str(signer.pubkey()))),
            "getProgramAccounts": [{"pubkey": str(Pubkey.new_unique()), "account": {}}],
            "getLatestBlockhash": {"value": {"blockhash": str(Hash.default()), "lastValidBlockHeight": 10}},
            "sendTransaction": "sig",
            "getSignatureStatuses": {"value": [{"confirmationStatus": "confirmed", "err": None}]},
            "getTransaction": None,
        }
    )
    settings = make_settings(look_ahead_seconds=3600)
    client = LedgerClient(settings, signer=signer, rpc=rpc, sleep=lambda s: None)
    scanner = DueSubscriptionScanner(client, Resolver(gateway, SettlementRecorder(client), path="due"), settings)

    report = scanner.run()

    assert report.aborted and not report.ok
    assert report.chunks == 0
    assert "not available" in report.error
    assert gateway.payouts == []
