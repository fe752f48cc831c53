from __future__ import annotations

import logging
from typing import Optional

from billing_recon.core.errors import PreconditionError, TransportError
from billing_recon.core.settings import S, Settings
from billing_recon.core.time import Deadline
from billing_recon.metrics import record_due_entries
from billing_recon.models import Outcome, RunReport
from billing_recon.services.chunking import chunk_accounts
from billing_recon.services.ledger import LedgerClient
from billing_recon.services.resolution import Resolver

logger = logging.getLogger(__name__)

PATH = "due"


class DueSubscriptionScanner:
    """Periodic sweep: every known user-subscriptions account, chunk by chunk, strictly in order."""

    def __init__(self, ledger: LedgerClient, resolver: Resolver, settings: Settings = S) -> None:
        self.ledger = ledger
        self.resolver = resolver
        self.look_ahead_seconds = settings.look_ahead_seconds
        self.batch_size = settings.batch_size
        self.fail_fast = settings.fail_fast
        self.deadline_seconds = settings.run_deadline_seconds

    def run(self, deadline: Optional[Deadline] = None) -> RunReport:
        deadline = deadline or Deadline(self.deadline_seconds)
        report = RunReport(path=PATH)

        config = self.ledger.verify_authority()
        if config.paused:
            raise PreconditionError("Program is paused; due subscriptions cannot be scanned")

        accounts = self.ledger.list_user_subscription_accounts()
        report.accounts_scanned = len(accounts)
        if not accounts:
            logger.info("No user subscription accounts found. Nothing to do.")
            return report

        logger.info(
            "Scanning %d user subscription accounts with look-ahead %d seconds...",
            len(accounts),
            self.look_ahead_seconds,
        )

        for batch in chunk_accounts(accounts, self.batch_size):
            if deadline.expired():
                report.deadline_exceeded = True
                break

            try:
                submission = self.ledger.submit_find_due_subscriptions(batch, self.look_ahead_seconds)
            except TransportError as exc:
                logger.error("Due scan of %d accounts could not be read back; stopping: %s", len(batch), exc)
                report.aborted = True
                report.error = str(exc)
                break
            report.chunks += 1
            due = submission.first("SubscriptionsDue")
            if due is None or not due.entries:
                continue

            logger.info("Found %d subscriptions due in tx %s", len(due.entries), submission.signature)
            report.entries_found += len(due.entries)
            record_due_entries(PATH, len(due.entries))

            for entry in due.entries:
                if deadline.expired():
                    report.deadline_exceeded = True
                    break
                logger.info(
                    "Processing subscription %s for user %s (%s) due at %s",
                    entry.subscription_id,
                    entry.user,
                    entry.service_name,
                    entry.due_ts,
                )
                resolution = self.resolver.resolve(entry, report)
                if resolution.outcome is not Outcome.SETTLED and self.fail_fast:
                    report.aborted = True
                    break

            if report.deadline_exceeded or report.aborted:
                break

        if report.deadline_exceeded:
            logger.warning("Run deadline reached; remaining chunks were not scanned.")
        elif report.aborted:
            if report.error is None:
                logger.error("Aborting run after first failure (fail-fast).")
        else:
            logger.info("Batch processing completed.")
        return report
