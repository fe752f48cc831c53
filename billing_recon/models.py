from __future__ import annotations

from enum import Enum
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PENDING_CANCELLATION = "PENDING_CANCELLATION"
    CANCELLED = "CANCELLED"

    @classmethod
    def from_index(cls, index: int) -> "SubscriptionStatus":
        order = [cls.ACTIVE, cls.PENDING_CANCELLATION, cls.CANCELLED]
        if index < 0 or index >= len(order):
            raise ValueError(f"unknown subscription status index {index}")
        return order[index]


RECIPIENT_TYPES = ["EMAIL", "PHONE", "PAYPAL_ID"]


# ============================================================
# Ledger snapshots
# ============================================================

class LedgerConfig(BaseModel):
    authority: str
    usdc_mint: str
    vault: str
    total_principal: int = 0
    reward_pool: int = 0
    acc_index: int = 0
    apy_bps: int = 0
    last_update_ts: int = 0
    paused: bool = False
    bump: int = 0
    vault_bump: int = 0


class ServiceDefinition(BaseModel):
    id: int
    creator: str
    name: str
    monthly_price: int
    details: str = ""
    logo_url: str = ""
    provider: str = ""
    created_at: int = 0


class ServiceRegistry(BaseModel):
    next_service_id: int = 0
    services: List[ServiceDefinition] = Field(default_factory=list)
    bump: int = 0

    def service_name(self, service_id: int) -> str:
        for service in self.services:
            if service.id == service_id:
                return service.name
        return f"service-{service_id}"


class Subscription(BaseModel):
    id: int
    service_id: int
    monthly_price: int
    started_at: int = 0
    last_payment_ts: int = 0
    next_billing_ts: int = 0
    pending_until_ts: int = 0
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    initial_payment_recorded: bool = False


class UserSubscriptions(BaseModel):
    owner: str
    next_subscription_id: int = 0
    total_active_commitment: int = 0
    total_pending_commitment: int = 0
    bump: int = 0
    paypal_configured: bool = False
    recipient_type: str = "EMAIL"
    receiver: str = ""
    subscriptions: List[Subscription] = Field(default_factory=list)

    def find(self, subscription_id: int) -> Optional[Subscription]:
        for subscription in self.subscriptions:
            if subscription.id == subscription_id:
                return subscription
        return None


# ============================================================
# Scan records
# ============================================================

class DueEntry(BaseModel):
    user: str
    subscription_id: int
    service_id: int
    service_name: str
    monthly_price: int
    recipient_type: str
    receiver: str
    due_ts: Optional[int] = None
    initial_payment_recorded: bool = True


class SignatureInfo(BaseModel):
    signature: str
    slot: int
    err: Optional[Any] = None


class PayoutCredential(BaseModel):
    token: str
    expires_at_ms: int

    def valid_at(self, now_ms: int) -> bool:
        return bool(self.token) and now_ms < self.expires_at_ms


# ============================================================
# Ledger events (closed set; anything else is UnrecognizedEvent)
# ============================================================

class SubscriptionsDue(BaseModel):
    kind: Literal["SubscriptionsDue"] = "SubscriptionsDue"
    entries: List[DueEntry] = Field(default_factory=list)


class SubscriptionPaymentRecorded(BaseModel):
    kind: Literal["SubscriptionPaymentRecorded"] = "SubscriptionPaymentRecorded"
    operator: str
    user: str
    subscription_id: int
    status: SubscriptionStatus
    paid_ts: int


class ActivationEvent(BaseModel):
    kind: Literal["SubscriptionActivated"] = "SubscriptionActivated"
    user: str
    subscription_id: int
    service_id: int
    monthly_price: int
    recipient_type: str
    receiver: str

    def to_due_entry(self, service_name: str) -> DueEntry:
        return DueEntry(
            user=self.user,
            subscription_id=self.subscription_id,
            service_id=self.service_id,
            service_name=service_name,
            monthly_price=self.monthly_price,
            recipient_type=self.recipient_type,
            receiver=self.receiver,
            initial_payment_recorded=False,
        )


class SubscriptionCancellationRequested(BaseModel):
    kind: Literal["SubscriptionCancellationRequested"] = "SubscriptionCancellationRequested"
    user: str
    subscription_id: int
    service_id: int
    monthly_price: int
    pending_until_ts: int


class UnrecognizedEvent(BaseModel):
    kind: Literal["Unrecognized"] = "Unrecognized"
    discriminator: str = ""
    reason: str
    raw: str = ""


LedgerEvent = Union[
    SubscriptionsDue,
    SubscriptionPaymentRecorded,
    ActivationEvent,
    SubscriptionCancellationRequested,
    UnrecognizedEvent,
]


class LedgerSubmission(BaseModel):
    signature: str
    events: List[LedgerEvent] = Field(default_factory=list)

    def first(self, kind: str) -> Optional[LedgerEvent]:
        for event in self.events:
            if event.kind == kind:
                return event
        return None


# ============================================================
# Run results
# ============================================================

class Outcome(str, Enum):
    SETTLED = "settled"
    PAYOUT_FAILED = "payout_failed"
    SETTLEMENT_FAILED = "settlement_failed"


class Resolution(BaseModel):
    entry: DueEntry
    outcome: Outcome
    settlement: Optional[SubscriptionPaymentRecorded] = None
    settlement_signature: Optional[str] = None
    error: Optional[str] = None


class EntryFailure(BaseModel):
    user: str
    subscription_id: int
    stage: str
    error: str


class RunReport(BaseModel):
    path: str
    accounts_scanned: int = 0
    chunks: int = 0
    transactions_inspected: int = 0
    entries_found: int = 0
    settled: int = 0
    skipped_duplicate: int = 0
    skipped_missing: int = 0
    failures: List[EntryFailure] = Field(default_factory=list)
    deadline_exceeded: bool = False
    aborted: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return not self.failures and not self.deadline_exceeded and not self.aborted

    def summary(self) -> str:
        return (
            f"path={self.path} accounts={self.accounts_scanned} chunks={self.chunks} "
            f"transactions={self.transactions_inspected} found={self.entries_found} "
            f"settled={self.settled} duplicates={self.skipped_duplicate} missing={self.skipped_missing} "
            f"failures={len(self.failures)} deadline_exceeded={self.deadline_exceeded} aborted={self.aborted}"
        )
