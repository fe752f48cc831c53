from __future__ import annotations

import logging
import secrets
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import requests

from billing_recon.core.errors import PayoutError, PayoutTransportError
from billing_recon.core.retry import RetryPolicy, call_with_retry
from billing_recon.core.settings import S, Settings
from billing_recon.core.time import now_ms
from billing_recon.metrics import record_token_exchange
from billing_recon.models import DueEntry, PayoutCredential

logger = logging.getLogger(__name__)

MICRO_UNITS = Decimal(1_000_000)
TOKEN_SAFETY_MARGIN_SECONDS = 60
DEFAULT_TOKEN_TTL_SECONDS = 3000


def micro_to_currency_string(micro_amount: int) -> str:
    """Fixed-point (6 decimals) to a 2-decimal string, half-up at the cent."""
    d = (Decimal(int(micro_amount)) / MICRO_UNITS).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return f"{d:.2f}"


def format_micro(micro_amount: int) -> str:
    whole, frac = divmod(int(micro_amount), 1_000_000)
    return f"{whole}.{frac:06d}"


def new_batch_id() -> str:
    return f"subly-{now_ms()}-{secrets.token_hex(4)}"


def build_payout_body(entry: DueEntry, *, batch_id: str, currency: str) -> Dict[str, Any]:
    return {
        "sender_batch_header": {
            "sender_batch_id": batch_id,
            "email_subject": "You have received a payout",
            "email_message": "Your Subly payout is on the way.",
        },
        "items": [
            {
                "recipient_type": entry.recipient_type,
                "amount": {"value": micro_to_currency_string(entry.monthly_price), "currency": currency},
                "note": f"Subly payout for {entry.service_name}",
                "sender_item_id": f"sub-{entry.subscription_id}",
                "receiver": entry.receiver,
            }
        ],
    }


class PayoutGateway:
    """PayPal Payouts client.

    The bearer credential is cached on the instance; two gateways never share
    a token. Without client credentials every payout is a logged no-op.
    """

    def __init__(self, settings: Settings = S, *, policy: Optional[RetryPolicy] = None, session=None) -> None:
        self.base_url = settings.paypal_api_base
        self.client_id = settings.paypal_client_id
        self.client_secret = settings.paypal_client_secret
        self.currency = settings.paypal_currency
        self.timeout = settings.http_timeout_seconds
        self.policy = policy or RetryPolicy.from_settings(settings)
        self.http = session or requests
        self.credential: Optional[PayoutCredential] = None

        if not self.configured:
            logger.warning("PAYPAL_CLIENT_ID or PAYPAL_CLIENT_SECRET not set. Payout calls will be skipped.")

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    # ---------- OAuth ----------

    def _exchange_token(self) -> PayoutCredential:
        url = f"{self.base_url}/v1/oauth2/token"
        try:
            r = self.http.post(
                url,
                auth=(self.client_id, self.client_secret),
                headers={"Accept": "application/json"},
                data={"grant_type": "client_credentials"},
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise PayoutTransportError(f"PayPal token request failed: {exc}") from exc

        if r.status_code == 429 or r.status_code >= 500:
            raise PayoutTransportError(f"PayPal token request failed (status {r.status_code})")
        if not 200 <= r.status_code < 300:
            raise PayoutError(
                f"PayPal token request failed (status {r.status_code}): {r.text}",
                status_code=r.status_code,
                body=r.text,
            )
        try:
            data = r.json()
            access = data["access_token"]
        except (ValueError, KeyError) as exc:
            raise PayoutError("PayPal token response missing access_token", status_code=r.status_code, body=r.text) from exc

        expires_in = int(data.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS)
        record_token_exchange()
        return PayoutCredential(
            token=access,
            expires_at_ms=now_ms() + (expires_in - TOKEN_SAFETY_MARGIN_SECONDS) * 1000,
        )

    def ensure_access_token(self) -> str:
        if self.credential is not None and self.credential.valid_at(now_ms()):
            return self.credential.token
        self.credential = call_with_retry(
            self._exchange_token,
            self.policy,
            retry_on=(PayoutTransportError,),
            describe="PayPal token exchange",
        )
        return self.credential.token

    # ---------- Payouts ----------

    def _post_payout(self, body: Dict[str, Any]) -> Dict[str, Any]:
        # Runs inside the payout retry loop, so a refresh here is a single exchange.
        if self.credential is None or not self.credential.valid_at(now_ms()):
            self.credential = self._exchange_token()
        url = f"{self.base_url}/v1/payments/payouts"
        headers = {
            "Authorization": f"Bearer {self.credential.token}",
            "Content-Type": "application/json",
        }
        try:
            r = self.http.post(url, headers=headers, json=body, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise PayoutTransportError(f"PayPal payout request failed: {exc}") from exc

        if r.status_code == 401:
            # Revoked before its advertised expiry; refresh on the next attempt.
            self.credential = None
            raise PayoutTransportError("PayPal payout rejected the bearer token (status 401)")
        if r.status_code == 429 or r.status_code >= 500:
            raise PayoutTransportError(f"PayPal payout failed (status {r.status_code}): {r.text}")
        if not 200 <= r.status_code < 300:
            raise PayoutError(
                f"PayPal payout failed (status {r.status_code}): {r.text}",
                status_code=r.status_code,
                body=r.text,
            )
        try:
            return r.json() or {}
        except ValueError:
            return {}

    def create_payout(self, entry: DueEntry) -> Optional[str]:
        """Send one payout item; returns the provider batch id, or None when skipped."""
        if not self.configured:
            logger.info(
                "  -> Skipping PayPal payout (credentials missing) for %s:%s amount %s USDC",
                entry.recipient_type,
                entry.receiver,
                format_micro(entry.monthly_price),
            )
            return None

        sender_batch_id = new_batch_id()
        body = build_payout_body(entry, batch_id=sender_batch_id, currency=self.currency)
        attempts = {"n": 0}

        def attempt() -> Dict[str, Any]:
            attempts["n"] += 1
            return self._post_payout(body)

        try:
            self.ensure_access_token()
            result = call_with_retry(
                attempt,
                self.policy,
                retry_on=(PayoutTransportError,),
                describe=f"PayPal payout for subscription {entry.subscription_id}",
            )
        except PayoutTransportError as exc:
            raise PayoutError(str(exc)) from exc
        except PayoutError as exc:
            if attempts["n"] > 1 and is_duplicate_batch(exc):
                logger.warning(
                    "  -> PayPal already holds batch %s from an earlier attempt for subscription %s; treating as sent",
                    sender_batch_id,
                    entry.subscription_id,
                )
                return sender_batch_id
            raise

        batch_id = (result.get("batch_header") or {}).get("payout_batch_id") or "unknown"
        logger.info("  -> PayPal payout accepted. Batch ID: %s", batch_id)
        return batch_id


def is_duplicate_batch(exc: PayoutError) -> bool:
    """PayPal rejects a reused sender_batch_id with a 4xx naming the field."""
    if not 400 <= exc.status_code < 500:
        return False
    body = exc.body.upper()
    return "SENDER_BATCH_ID" in body or "DUPLICATE_REQUEST" in body
