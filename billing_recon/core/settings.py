from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Settings:
    # Ledger
    rpc_url: str = os.environ.get("ANCHOR_PROVIDER_URL", "http://127.0.0.1:8899")
    wallet_path: str = os.environ.get("ANCHOR_WALLET", os.path.expanduser("~/.config/solana/id.json"))
    program_id: str = os.environ.get("SUBLY_PROGRAM_ID", "C1gJtFGfd2Tt3omV6eWvezeofymZbp7RYj94Hg4drWq1")
    commitment: str = os.environ.get("COMMITMENT", "confirmed").lower()
    billing_period_seconds: int = int(os.environ.get("BILLING_PERIOD_SECONDS", str(30 * 24 * 3600)))

    # Due scan
    look_ahead_seconds: int = int(os.environ.get("LOOK_AHEAD_SECONDS", str(24 * 3600)))
    batch_size: int = int(os.environ.get("BATCH_SIZE", "16"))

    # Activation scan
    new_subs_start_slot: int = int(os.environ.get("NEW_SUBS_START_SLOT", "0"))
    new_subs_fetch_limit: int = int(os.environ.get("NEW_SUBS_FETCH_LIMIT", "100"))
    new_subs_max_tx: int = int(os.environ.get("NEW_SUBS_MAX_TX", "1000"))
    new_subs_before_signature: str = os.environ.get("NEW_SUBS_BEFORE_SIGNATURE", "")

    # PayPal
    paypal_api_base: str = os.environ.get("PAYPAL_API_BASE", "https://api-m.sandbox.paypal.com").rstrip("/")
    paypal_client_id: str = os.environ.get("PAYPAL_CLIENT_ID", "")
    paypal_client_secret: str = os.environ.get("PAYPAL_CLIENT_SECRET", "")
    paypal_currency: str = os.environ.get("PAYPAL_CURRENCY", "USD").upper()

    # Timeouts / retry
    http_timeout_seconds: float = float(os.environ.get("HTTP_TIMEOUT_SECONDS", "20"))
    rpc_timeout_seconds: float = float(os.environ.get("RPC_TIMEOUT_SECONDS", "30"))
    confirm_timeout_seconds: float = float(os.environ.get("CONFIRM_TIMEOUT_SECONDS", "60"))
    confirm_poll_seconds: float = float(os.environ.get("CONFIRM_POLL_SECONDS", "0.5"))
    retry_max_attempts: int = int(os.environ.get("RETRY_MAX_ATTEMPTS", "3"))
    retry_backoff_seconds: float = float(os.environ.get("RETRY_BACKOFF_SECONDS", "0.5"))
    retry_backoff_max_seconds: float = float(os.environ.get("RETRY_BACKOFF_MAX_SECONDS", "8"))

    # Run control
    fail_fast: bool = _env_bool("RECON_FAIL_FAST")
    run_deadline_seconds: float = float(os.environ.get("RUN_DEADLINE_SECONDS", "0"))

    # Ops
    metrics_textfile: str = os.environ.get("METRICS_TEXTFILE", "")
    log_level: str = os.environ.get("LOG_LEVEL", "INFO").upper()


S = Settings()
