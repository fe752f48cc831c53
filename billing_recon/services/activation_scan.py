from __future__ import annotations

import logging
from typing import Optional

from billing_recon.core.errors import TransportError
from billing_recon.core.settings import S, Settings
from billing_recon.core.time import Deadline
from billing_recon.metrics import record_due_entries, record_skip
from billing_recon.models import (
    ActivationEvent,
    Outcome,
    Resolution,
    RunReport,
    ServiceRegistry,
    Subscription,
)
from billing_recon.services.events import events_of_kind
from billing_recon.services.ledger import MAX_SIGNATURES_PER_PAGE, LedgerClient
from billing_recon.services.resolution import Resolver

logger = logging.getLogger(__name__)

PATH = "activation"


def already_processed(subscription: Subscription, billing_period_seconds: int) -> bool:
    """True once any settlement past the first period has been recorded, by either scan path."""
    return (
        subscription.last_payment_ts > subscription.started_at
        or subscription.next_billing_ts > subscription.started_at + billing_period_seconds
    )


class NewActivationScanner:
    """Walks program history newest-first and pays each unsettled first period once."""

    def __init__(self, ledger: LedgerClient, resolver: Resolver, settings: Settings = S) -> None:
        self.ledger = ledger
        self.resolver = resolver
        self.billing_period_seconds = settings.billing_period_seconds
        self.start_slot = settings.new_subs_start_slot
        self.fetch_limit = min(max(1, settings.new_subs_fetch_limit), MAX_SIGNATURES_PER_PAGE)
        if self.fetch_limit != settings.new_subs_fetch_limit:
            logger.warning(
                "NEW_SUBS_FETCH_LIMIT=%d is outside 1..%d; using %d",
                settings.new_subs_fetch_limit,
                MAX_SIGNATURES_PER_PAGE,
                self.fetch_limit,
            )
        self.max_transactions = settings.new_subs_max_tx
        self.before_signature = settings.new_subs_before_signature or None
        self.fail_fast = settings.fail_fast
        self.deadline_seconds = settings.run_deadline_seconds

    def run(self, deadline: Optional[Deadline] = None) -> RunReport:
        deadline = deadline or Deadline(self.deadline_seconds)
        report = RunReport(path=PATH)

        self.ledger.verify_authority()
        registry = self.ledger.fetch_registry()

        processed = 0
        before = self.before_signature
        finished = False

        while not finished and processed < self.max_transactions:
            page = self.ledger.signatures_for_program(before, self.fetch_limit)
            if not page:
                break

            for info in page:
                before = info.signature
                if info.err:
                    continue
                if info.slot < self.start_slot:
                    finished = True
                    break
                if deadline.expired():
                    report.deadline_exceeded = True
                    finished = True
                    break

                try:
                    events = self.ledger.transaction_events(info.signature)
                except TransportError as exc:
                    logger.error("Transaction %s could not be read; stopping before it: %s", info.signature, exc)
                    report.aborted = True
                    report.error = str(exc)
                    finished = True
                    break
                report.transactions_inspected += 1
                activations = events_of_kind(events, "SubscriptionActivated")
                if not activations:
                    continue

                report.entries_found += len(activations)
                record_due_entries(PATH, len(activations))
                for activation in activations:
                    resolution = self.handle_activation(activation, info.signature, registry, report)
                    if resolution is not None and resolution.outcome is not Outcome.SETTLED and self.fail_fast:
                        report.aborted = True
                        finished = True
                        break
                if finished:
                    break

                processed += 1
                if processed >= self.max_transactions:
                    break

            if len(page) < self.fetch_limit:
                break

        logger.info("Processed %d transactions for SubscriptionActivated events.", processed)
        if report.deadline_exceeded:
            logger.warning("Run deadline reached; older history was not scanned.")
        elif report.aborted:
            if report.error is None:
                logger.error("Aborting run after first failure (fail-fast).")
        return report

    def handle_activation(
        self,
        activation: ActivationEvent,
        signature: str,
        registry: ServiceRegistry,
        report: RunReport,
    ) -> Optional[Resolution]:
        logger.info(
            "Payout for new subscription %s to user %s (tx %s)",
            activation.subscription_id,
            activation.user,
            signature,
        )

        snapshot = self.ledger.fetch_user_subscriptions(activation.user)
        if snapshot is None:
            logger.warning("  -> User subscriptions account not found. Skipping payout.")
            report.skipped_missing += 1
            record_skip(PATH, "account_missing")
            return None

        subscription = snapshot.find(activation.subscription_id)
        if subscription is None:
            logger.warning("  -> Subscription entry not found in account. Skipping payout.")
            report.skipped_missing += 1
            record_skip(PATH, "subscription_missing")
            return None

        if already_processed(subscription, self.billing_period_seconds):
            logger.info("  -> Initial payout already processed. Skipping duplicate.")
            report.skipped_duplicate += 1
            record_skip(PATH, "duplicate")
            return None

        entry = activation.to_due_entry(registry.service_name(activation.service_id))
        return self.resolver.resolve(entry, report)
