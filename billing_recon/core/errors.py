from __future__ import annotations

from typing import List, Optional


class ReconError(Exception):
    pass


class PreconditionError(ReconError):
    """Startup check failed; nothing has been mutated."""


class ConfigNotFound(PreconditionError):
    pass


class TransportError(ReconError):
    pass


class LedgerTransportError(TransportError):
    pass


class PayoutTransportError(TransportError):
    pass


class LedgerRejectedError(ReconError):
    def __init__(self, message: str, *, logs: Optional[List[str]] = None, err: object = None) -> None:
        super().__init__(message)
        self.logs = list(logs or [])
        self.err = err


class PayoutError(ReconError):
    def __init__(self, message: str, *, status_code: int = 0, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class DecodeError(ReconError):
    pass
