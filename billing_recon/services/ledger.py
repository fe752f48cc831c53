from __future__ import annotations

import base64
import json
import logging
import os
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from billing_recon.core.codec import (
    BorshReader,
    BorshWriter,
    account_discriminator,
    instruction_discriminator,
)
from billing_recon.core.errors import (
    ConfigNotFound,
    LedgerRejectedError,
    LedgerTransportError,
    PreconditionError,
)
from billing_recon.core.rpc import RpcClient, commitment_config
from billing_recon.core.settings import S, Settings
from billing_recon.models import (
    RECIPIENT_TYPES,
    LedgerConfig,
    LedgerEvent,
    LedgerSubmission,
    ServiceDefinition,
    ServiceRegistry,
    SignatureInfo,
    Subscription,
    SubscriptionStatus,
    UserSubscriptions,
)
from billing_recon.services.events import decode_logs

logger = logging.getLogger(__name__)

SEED_CONFIG = "config"
SEED_REGISTRY = "subscription_registry"
SEED_USER_SUBSCRIPTIONS = "user_subscriptions"

COMMITMENT_LEVELS = ("processed", "confirmed", "finalized")

TX_FETCH_ATTEMPTS = 5
TX_FETCH_DELAY_SECONDS = 0.2

# getSignaturesForAddress rejects larger pages.
MAX_SIGNATURES_PER_PAGE = 1000


# ============================================================
# Addresses
# ============================================================

def derive_address(program_id: str, *seeds: Union[str, bytes]) -> str:
    seed_bytes = [s.encode("utf-8") if isinstance(s, str) else bytes(s) for s in seeds]
    pda, _bump = Pubkey.find_program_address(seed_bytes, Pubkey.from_string(program_id))
    return str(pda)


def user_subscriptions_address(program_id: str, user: str) -> str:
    return derive_address(program_id, SEED_USER_SUBSCRIPTIONS, bytes(Pubkey.from_string(user)))


# ============================================================
# Account decoding
# ============================================================

def decode_config(data: bytes) -> LedgerConfig:
    r = BorshReader(data)
    r.expect_discriminator(account_discriminator("SublyConfig"), "SublyConfig")
    return LedgerConfig(
        authority=r.pubkey(),
        usdc_mint=r.pubkey(),
        vault=r.pubkey(),
        total_principal=r.u64(),
        reward_pool=r.u64(),
        acc_index=r.u128(),
        apy_bps=r.u16(),
        last_update_ts=r.i64(),
        paused=r.bool(),
        bump=r.u8(),
        vault_bump=r.u8(),
    )


def _service(r: BorshReader) -> ServiceDefinition:
    return ServiceDefinition(
        id=r.u64(),
        creator=r.pubkey(),
        name=r.string(),
        monthly_price=r.u64(),
        details=r.string(),
        logo_url=r.string(),
        provider=r.string(),
        created_at=r.i64(),
    )


def decode_registry(data: bytes) -> ServiceRegistry:
    r = BorshReader(data)
    r.expect_discriminator(account_discriminator("SubscriptionRegistry"), "SubscriptionRegistry")
    return ServiceRegistry(next_service_id=r.u64(), services=r.vec(_service), bump=r.u8())


def _subscription(r: BorshReader) -> Subscription:
    return Subscription(
        id=r.u64(),
        service_id=r.u64(),
        monthly_price=r.u64(),
        started_at=r.i64(),
        last_payment_ts=r.i64(),
        next_billing_ts=r.i64(),
        pending_until_ts=r.i64(),
        status=SubscriptionStatus.from_index(r.u8()),
        initial_payment_recorded=r.bool(),
    )


def decode_user_subscriptions(data: bytes) -> UserSubscriptions:
    r = BorshReader(data)
    r.expect_discriminator(account_discriminator("UserSubscriptions"), "UserSubscriptions")
    owner = r.pubkey()
    next_id = r.u64()
    active = r.u64()
    pending = r.u64()
    bump = r.u8()
    configured = r.bool()
    recipient_index = r.u8()
    recipient_type = RECIPIENT_TYPES[recipient_index] if recipient_index < len(RECIPIENT_TYPES) else "EMAIL"
    receiver = r.string()
    return UserSubscriptions(
        owner=owner,
        next_subscription_id=next_id,
        total_active_commitment=active,
        total_pending_commitment=pending,
        bump=bump,
        paypal_configured=configured,
        recipient_type=recipient_type,
        receiver=receiver,
        subscriptions=r.vec(_subscription),
    )


def load_keypair(path: str) -> Keypair:
    with open(os.path.expanduser(path), "r", encoding="utf-8") as fh:
        raw = json.load(fh)
    return Keypair.from_bytes(bytes(raw))


# ============================================================
# Client
# ============================================================

class LedgerClient:
    def __init__(
        self,
        settings: Settings = S,
        *,
        signer: Optional[Keypair] = None,
        rpc: Optional[RpcClient] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if settings.commitment not in COMMITMENT_LEVELS:
            raise PreconditionError(
                f"Unsupported commitment {settings.commitment!r} (expected one of {', '.join(COMMITMENT_LEVELS)})"
            )
        self.settings = settings
        self.program_id = settings.program_id
        self.commitment = settings.commitment
        # History queries do not accept "processed".
        self.finality = "confirmed" if settings.commitment == "processed" else settings.commitment
        self.signer = signer or load_keypair(settings.wallet_path)
        self.rpc = rpc or RpcClient(settings)
        self._sleep = sleep
        self._clock = clock

        self.config_address = derive_address(self.program_id, SEED_CONFIG)
        self.registry_address = derive_address(self.program_id, SEED_REGISTRY)

    @property
    def signer_address(self) -> str:
        return str(self.signer.pubkey())

    # ---------- reads ----------

    def _account_data(self, address: str) -> Optional[bytes]:
        result = self.rpc.call("getAccountInfo", address, commitment_config(self.commitment, encoding="base64"))
        value = (result or {}).get("value")
        if not value:
            return None
        data = value.get("data") or ["", "base64"]
        return base64.b64decode(data[0])

    def fetch_config(self) -> LedgerConfig:
        data = self._account_data(self.config_address)
        if data is None:
            raise ConfigNotFound(f"Config account {self.config_address} not found for program {self.program_id}")
        return decode_config(data)

    def fetch_registry(self) -> ServiceRegistry:
        data = self._account_data(self.registry_address)
        if data is None:
            logger.warning("Subscription registry %s not found; service names will fall back to ids", self.registry_address)
            return ServiceRegistry()
        return decode_registry(data)

    def fetch_user_subscriptions(self, user: str) -> Optional[UserSubscriptions]:
        data = self._account_data(user_subscriptions_address(self.program_id, user))
        if data is None:
            return None
        return decode_user_subscriptions(data)

    def verify_authority(self) -> LedgerConfig:
        config = self.fetch_config()
        if config.authority != self.signer_address:
            raise PreconditionError(
                f"Wallet {self.signer_address} is not the configured authority ({config.authority}). "
                "Use the config authority wallet to run the batch."
            )
        return config

    def list_user_subscription_accounts(self) -> List[str]:
        disc = base64.b64encode(account_discriminator("UserSubscriptions")).decode("ascii")
        result = self.rpc.call(
            "getProgramAccounts",
            self.program_id,
            commitment_config(
                self.commitment,
                encoding="base64",
                dataSlice={"offset": 0, "length": 0},
                filters=[{"memcmp": {"offset": 0, "bytes": disc, "encoding": "base64"}}],
            ),
        )
        if isinstance(result, dict):
            result = result.get("value") or []
        return [item["pubkey"] for item in result or []]

    def signatures_for_program(self, before: Optional[str], limit: int) -> List[SignatureInfo]:
        result = self.rpc.call(
            "getSignaturesForAddress",
            self.program_id,
            commitment_config(self.finality, limit=limit, before=before or None),
        )
        return [
            SignatureInfo(signature=item["signature"], slot=int(item.get("slot") or 0), err=item.get("err"))
            for item in result or []
        ]

    def _fetch_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        for attempt in range(TX_FETCH_ATTEMPTS):
            tx = self.rpc.call(
                "getTransaction",
                signature,
                commitment_config(self.finality, encoding="json", maxSupportedTransactionVersion=0),
            )
            if tx:
                return tx
            if attempt + 1 < TX_FETCH_ATTEMPTS:
                self._sleep(TX_FETCH_DELAY_SECONDS)
        return None

    def transaction_events(self, signature: str, *, required: bool = True) -> List[LedgerEvent]:
        """Decode the events of a confirmed transaction.

        An unreadable transaction raises ``LedgerTransportError`` unless
        ``required`` is False, in which case it is logged and yields no events.
        """
        tx = self._fetch_transaction(signature)
        if tx is None:
            message = f"Transaction {signature} not available after {TX_FETCH_ATTEMPTS} attempts"
            if required:
                raise LedgerTransportError(message)
            logger.warning("%s; no events decoded", message)
            return []
        logs = (tx.get("meta") or {}).get("logMessages") or []
        return decode_logs(logs, signature=signature)

    # ---------- writes ----------

    def submit_find_due_subscriptions(self, account_batch: Sequence[str], look_ahead_seconds: int) -> LedgerSubmission:
        data = instruction_discriminator("find_due_subscriptions") + BorshWriter().i64(look_ahead_seconds).to_bytes()
        accounts = [
            AccountMeta(Pubkey.from_string(self.config_address), is_signer=False, is_writable=False),
            AccountMeta(Pubkey.from_string(self.registry_address), is_signer=False, is_writable=False),
        ]
        accounts.extend(AccountMeta(Pubkey.from_string(a), is_signer=False, is_writable=False) for a in account_batch)
        ix = Instruction(Pubkey.from_string(self.program_id), data, accounts)
        return self._submit("find_due_subscriptions", ix, events_required=True)

    def submit_record_payment(self, user: str, subscription_id: int, payment_ts: Optional[int] = None) -> LedgerSubmission:
        data = (
            instruction_discriminator("record_subscription_payment")
            + BorshWriter().u64(subscription_id).option_i64(payment_ts).to_bytes()
        )
        accounts = [
            AccountMeta(Pubkey.from_string(self.config_address), is_signer=False, is_writable=False),
            AccountMeta(self.signer.pubkey(), is_signer=True, is_writable=False),
            AccountMeta(Pubkey.from_string(user), is_signer=False, is_writable=False),
            AccountMeta(
                Pubkey.from_string(user_subscriptions_address(self.program_id, user)),
                is_signer=False,
                is_writable=True,
            ),
        ]
        ix = Instruction(Pubkey.from_string(self.program_id), data, accounts)
        # The write is confirmed either way; a missing read-back only loses the event.
        return self._submit("record_subscription_payment", ix, events_required=False)

    def _submit(self, name: str, ix: Instruction, *, events_required: bool) -> LedgerSubmission:
        latest = self.rpc.call("getLatestBlockhash", commitment_config(self.commitment))
        blockhash = Hash.from_string(latest["value"]["blockhash"])
        message = Message.new_with_blockhash([ix], self.signer.pubkey(), blockhash)
        tx = Transaction([self.signer], message, blockhash)
        signature = str(tx.signatures[0])
        encoded = base64.b64encode(bytes(tx)).decode("ascii")

        # Retries re-send these exact signed bytes.
        try:
            self.rpc.call(
                "sendTransaction",
                encoded,
                {"encoding": "base64", "skipPreflight": False, "preflightCommitment": self.commitment},
            )
        except LedgerRejectedError as exc:
            if not _already_processed(exc):
                logger.error("%s rejected by ledger: %s", name, exc)
                for line in exc.logs:
                    logger.error("  %s", line)
                raise
            logger.info("%s tx %s already processed by the ledger", name, signature)

        self._await_confirmation(name, signature)
        events = self.transaction_events(signature, required=events_required)
        return LedgerSubmission(signature=signature, events=events)

    def _await_confirmation(self, name: str, signature: str) -> None:
        wanted = COMMITMENT_LEVELS.index(self.commitment)
        deadline = self._clock() + self.settings.confirm_timeout_seconds
        while True:
            result = self.rpc.call("getSignatureStatuses", [signature], {"searchTransactionHistory": False})
            statuses = (result or {}).get("value") or [None]
            status = statuses[0]
            if status:
                if status.get("err"):
                    tx = self._fetch_transaction(signature) or {}
                    logs = (tx.get("meta") or {}).get("logMessages") or []
                    raise LedgerRejectedError(f"{name} tx {signature} failed: {status['err']}", logs=logs, err=status["err"])
                level = status.get("confirmationStatus") or "processed"
                if level in COMMITMENT_LEVELS and COMMITMENT_LEVELS.index(level) >= wanted:
                    return
            if self._clock() >= deadline:
                raise LedgerTransportError(
                    f"{name} tx {signature} not {self.commitment} within {self.settings.confirm_timeout_seconds:.0f}s"
                )
            self._sleep(self.settings.confirm_poll_seconds)


def _already_processed(exc: LedgerRejectedError) -> bool:
    return exc.err == "AlreadyProcessed" or "already been processed" in str(exc)
