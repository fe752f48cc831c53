from __future__ import annotations

import logging
from typing import Optional

from billing_recon.core.errors import LedgerRejectedError, PayoutError, TransportError
from billing_recon.metrics import record_payout, record_settlement
from billing_recon.models import DueEntry, EntryFailure, Outcome, Resolution, RunReport
from billing_recon.services.payouts import PayoutGateway
from billing_recon.services.settlement import SettlementRecorder

logger = logging.getLogger(__name__)


class Resolver:
    """Pay out one entry, then record its settlement. Never settles an unpaid period."""

    def __init__(self, gateway: PayoutGateway, recorder: SettlementRecorder, *, path: str) -> None:
        self.gateway = gateway
        self.recorder = recorder
        self.path = path

    def _fail(self, report: RunReport, entry: DueEntry, stage: str, exc: Exception) -> EntryFailure:
        failure = EntryFailure(user=entry.user, subscription_id=entry.subscription_id, stage=stage, error=str(exc))
        report.failures.append(failure)
        return failure

    def resolve(self, entry: DueEntry, report: RunReport, payment_ts: Optional[int] = None) -> Resolution:
        try:
            batch_id = self.gateway.create_payout(entry)
        except (PayoutError, TransportError) as exc:
            logger.error(
                "Payout failed for subscription %s (user %s); settlement not recorded: %s",
                entry.subscription_id,
                entry.user,
                exc,
            )
            record_payout(self.path, "failed")
            self._fail(report, entry, "payout", exc)
            return Resolution(entry=entry, outcome=Outcome.PAYOUT_FAILED, error=str(exc))

        record_payout(self.path, "sent" if batch_id else "skipped")

        try:
            signature, event = self.recorder.record(entry.user, entry.subscription_id, payment_ts)
        except (LedgerRejectedError, TransportError) as exc:
            if batch_id is None:
                logger.error(
                    "Settlement failed for subscription %s (user %s); payout was skipped, nothing was sent: %s",
                    entry.subscription_id,
                    entry.user,
                    exc,
                )
            else:
                logger.critical(
                    "Payout %s sent for subscription %s (user %s) but settlement was NOT recorded: %s. "
                    "Reconcile by hand before the next run.",
                    batch_id,
                    entry.subscription_id,
                    entry.user,
                    exc,
                )
            self._fail(report, entry, "settlement", exc)
            return Resolution(entry=entry, outcome=Outcome.SETTLEMENT_FAILED, error=str(exc))

        report.settled += 1
        record_settlement(self.path, event.status.value if event else "unknown")
        return Resolution(
            entry=entry,
            outcome=Outcome.SETTLED,
            settlement=event,
            settlement_signature=signature,
        )
