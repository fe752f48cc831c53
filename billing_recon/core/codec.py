"""Little-endian Borsh helpers and Anchor discriminators.

Only the handful of primitive shapes the reconciliation engine reads or
writes are covered here; the full program interface lives with the ledger
program.
"""
from __future__ import annotations

import hashlib
import struct
from typing import Callable, List, Optional, TypeVar

from solders.pubkey import Pubkey

from .errors import DecodeError

T = TypeVar("T")

DISCRIMINATOR_LEN = 8


def _discriminator(namespace: str, name: str) -> bytes:
    return hashlib.sha256(f"{namespace}:{name}".encode("utf-8")).digest()[:DISCRIMINATOR_LEN]


def account_discriminator(name: str) -> bytes:
    return _discriminator("account", name)


def event_discriminator(name: str) -> bytes:
    return _discriminator("event", name)


def instruction_discriminator(name: str) -> bytes:
    return _discriminator("global", name)


class BorshReader:
    def __init__(self, data: bytes, offset: int = 0) -> None:
        self.data = bytes(data)
        self.offset = offset

    def _take(self, n: int) -> bytes:
        end = self.offset + n
        if n < 0 or end > len(self.data):
            raise DecodeError(f"buffer underrun: need {n} bytes at offset {self.offset}, have {len(self.data)}")
        chunk = self.data[self.offset:end]
        self.offset = end
        return chunk

    def _unpack(self, fmt: str) -> int:
        size = struct.calcsize(fmt)
        return struct.unpack(fmt, self._take(size))[0]

    def u8(self) -> int:
        return self._unpack("<B")

    def bool(self) -> bool:
        raw = self.u8()
        if raw not in (0, 1):
            raise DecodeError(f"invalid bool byte {raw}")
        return raw == 1

    def u16(self) -> int:
        return self._unpack("<H")

    def u32(self) -> int:
        return self._unpack("<I")

    def u64(self) -> int:
        return self._unpack("<Q")

    def i64(self) -> int:
        return self._unpack("<q")

    def u128(self) -> int:
        return int.from_bytes(self._take(16), "little")

    def pubkey(self) -> str:
        return str(Pubkey.from_bytes(self._take(32)))

    def string(self) -> str:
        length = self.u32()
        try:
            return self._take(length).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"invalid utf-8 string: {exc}") from exc

    def vec(self, item: Callable[["BorshReader"], T]) -> List[T]:
        return [item(self) for _ in range(self.u32())]

    def option(self, item: Callable[["BorshReader"], T]) -> Optional[T]:
        tag = self.u8()
        if tag == 0:
            return None
        if tag == 1:
            return item(self)
        raise DecodeError(f"invalid option tag {tag}")

    def expect_discriminator(self, expected: bytes, name: str) -> None:
        got = self._take(DISCRIMINATOR_LEN)
        if got != expected:
            raise DecodeError(f"discriminator mismatch for {name}: {got.hex()} != {expected.hex()}")

    def remaining(self) -> int:
        return len(self.data) - self.offset


class BorshWriter:
    def __init__(self) -> None:
        self._parts: List[bytes] = []

    def raw(self, data: bytes) -> "BorshWriter":
        self._parts.append(bytes(data))
        return self

    def u8(self, value: int) -> "BorshWriter":
        return self.raw(struct.pack("<B", value))

    def bool(self, value: bool) -> "BorshWriter":
        return self.u8(1 if value else 0)

    def u16(self, value: int) -> "BorshWriter":
        return self.raw(struct.pack("<H", value))

    def u32(self, value: int) -> "BorshWriter":
        return self.raw(struct.pack("<I", value))

    def u64(self, value: int) -> "BorshWriter":
        return self.raw(struct.pack("<Q", value))

    def i64(self, value: int) -> "BorshWriter":
        return self.raw(struct.pack("<q", value))

    def u128(self, value: int) -> "BorshWriter":
        return self.raw(int(value).to_bytes(16, "little"))

    def pubkey(self, value: str) -> "BorshWriter":
        return self.raw(bytes(Pubkey.from_string(value)))

    def string(self, value: str) -> "BorshWriter":
        encoded = value.encode("utf-8")
        return self.u32(len(encoded)).raw(encoded)

    def option_i64(self, value: Optional[int]) -> "BorshWriter":
        if value is None:
            return self.u8(0)
        return self.u8(1).i64(value)

    def vec(self, items: List[T], item: Callable[["BorshWriter", T], object]) -> "BorshWriter":
        self.u32(len(items))
        for it in items:
            item(self, it)
        return self

    def to_bytes(self) -> bytes:
        return b"".join(self._parts)
