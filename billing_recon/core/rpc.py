from __future__ import annotations

import itertools
import logging
from typing import Any, Dict, List, Optional

import requests

from billing_recon.metrics import record_rpc_call

from .errors import LedgerRejectedError, LedgerTransportError
from .retry import RetryPolicy, call_with_retry
from .settings import S, Settings

logger = logging.getLogger(__name__)

# JSON-RPC error codes the node uses when it is unhealthy rather than when the
# request itself is wrong.
_RETRYABLE_RPC_CODES = {
    -32004,  # block not available
    -32005,  # node unhealthy / behind
    -32007,  # slot skipped
    -32014,  # block status not yet available
    -32016,  # min context slot not reached
}
_PREFLIGHT_FAILURE = -32002


class RpcClient:
    """Thin JSON-RPC 2.0 client for a ledger node."""

    def __init__(self, settings: Settings = S, *, policy: Optional[RetryPolicy] = None, session=None) -> None:
        self.url = settings.rpc_url
        self.timeout = settings.rpc_timeout_seconds
        self.policy = policy or RetryPolicy.from_settings(settings)
        self.http = session or requests
        self._ids = itertools.count(1)

    def _post_once(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            r = self.http.post(self.url, json=payload, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            _count(method, "transport_error")
            raise LedgerTransportError(f"{method}: {exc}") from exc

        if r.status_code == 429 or r.status_code >= 500:
            _count(method, "transport_error")
            raise LedgerTransportError(f"{method}: HTTP {r.status_code} {r.text[:200]}")
        if r.status_code != 200:
            _count(method, "rejected")
            raise LedgerRejectedError(f"{method}: HTTP {r.status_code} {r.text[:200]}")

        try:
            body = r.json()
        except ValueError as exc:
            _count(method, "transport_error")
            raise LedgerTransportError(f"{method}: non-JSON response") from exc

        err = body.get("error")
        if err:
            code = err.get("code")
            message = err.get("message", "")
            if code in _RETRYABLE_RPC_CODES:
                _count(method, "transport_error")
                raise LedgerTransportError(f"{method}: {code} {message}")
            _count(method, "rejected")
            data = err.get("data") or {}
            logs = data.get("logs") if isinstance(data, dict) else None
            if code == _PREFLIGHT_FAILURE:
                raise LedgerRejectedError(f"{method}: transaction rejected: {message}", logs=logs, err=data.get("err"))
            raise LedgerRejectedError(f"{method}: {code} {message}", logs=logs)

        _count(method, "ok")
        return body.get("result")

    def call(self, method: str, *params: Any) -> Any:
        return call_with_retry(
            lambda: self._post_once(method, list(params)),
            self.policy,
            retry_on=(LedgerTransportError,),
            describe=f"rpc {method}",
        )


def _count(method: str, outcome: str) -> None:
    record_rpc_call(method, outcome)


def commitment_config(commitment: str, **extra: Any) -> Dict[str, Any]:
    cfg: Dict[str, Any] = {"commitment": commitment}
    cfg.update({k: v for k, v in extra.items() if v is not None})
    return cfg
