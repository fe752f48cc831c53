from __future__ import annotations

import logging
from typing import Optional, Tuple

from billing_recon.models import SubscriptionPaymentRecorded
from billing_recon.services.ledger import LedgerClient

logger = logging.getLogger(__name__)


class SettlementRecorder:
    def __init__(self, ledger: LedgerClient) -> None:
        self.ledger = ledger

    def record(
        self,
        user: str,
        subscription_id: int,
        payment_ts: Optional[int] = None,
    ) -> Tuple[str, Optional[SubscriptionPaymentRecorded]]:
        """Write the payment-recorded instruction; ``payment_ts=None`` uses the ledger clock."""
        submission = self.ledger.submit_record_payment(user, subscription_id, payment_ts)
        event = submission.first("SubscriptionPaymentRecorded")
        if event is None:
            logger.warning(
                "Payment recorded in tx %s but no SubscriptionPaymentRecorded event was decoded",
                submission.signature,
            )
            return submission.signature, None

        if event.subscription_id != subscription_id or event.user != user:
            logger.warning(
                "Settlement event in tx %s is for %s/%s, expected %s/%s",
                submission.signature,
                event.user,
                event.subscription_id,
                user,
                subscription_id,
            )
        logger.info(
            "Payment recorded on-chain. Tx: %s (subscription %s now %s, paid_ts=%s)",
            submission.signature,
            event.subscription_id,
            event.status.value,
            event.paid_ts,
        )
        return submission.signature, event
