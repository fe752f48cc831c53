from __future__ import annotations

import time

from prometheus_client import REGISTRY, Counter, Gauge, Info, write_to_textfile

DUE_ENTRIES = Counter(
    "recon_due_entries_total",
    "Due or activation entries discovered by a scan",
    ["path"],
)
PAYOUTS = Counter(
    "recon_payouts_total",
    "Payout attempts by outcome",
    ["path", "outcome"],
)
SETTLEMENTS = Counter(
    "recon_settlements_total",
    "Settlements recorded on the ledger by resulting subscription status",
    ["path", "status"],
)
SKIPS = Counter(
    "recon_skips_total",
    "Entries skipped without a payout",
    ["path", "reason"],
)
TOKEN_EXCHANGES = Counter(
    "recon_token_exchanges_total",
    "OAuth client-credentials exchanges with the payment provider",
)
RPC_REQUESTS = Counter(
    "recon_rpc_requests_total",
    "Ledger JSON-RPC requests by method and outcome",
    ["method", "outcome"],
)
LAST_RUN_TS = Gauge(
    "recon_last_run_timestamp_seconds",
    "Unix time the last run of a scan path finished",
    ["path"],
)
LAST_RUN_OK = Gauge(
    "recon_last_run_ok",
    "1 when the last run of a scan path finished without failures",
    ["path"],
)
APP_INFO = Info(
    "recon",
    "Reconciler metadata",
)


def record_rpc_call(method: str, outcome: str) -> None:
    RPC_REQUESTS.labels(method=method, outcome=outcome).inc()


def record_token_exchange() -> None:
    TOKEN_EXCHANGES.inc()


def record_due_entries(path: str, count: int) -> None:
    if count > 0:
        DUE_ENTRIES.labels(path=path).inc(count)


def record_payout(path: str, outcome: str) -> None:
    PAYOUTS.labels(path=path, outcome=outcome).inc()


def record_settlement(path: str, status: str) -> None:
    SETTLEMENTS.labels(path=path, status=status).inc()


def record_skip(path: str, reason: str) -> None:
    SKIPS.labels(path=path, reason=reason).inc()


def record_run_finished(path: str, ok: bool) -> None:
    LAST_RUN_TS.labels(path=path).set(time.time())
    LAST_RUN_OK.labels(path=path).set(1 if ok else 0)


def set_app_info(name: str, version: str) -> None:
    APP_INFO.info({"name": name, "version": version})


def write_metrics(path: str) -> None:
    write_to_textfile(path, REGISTRY)
