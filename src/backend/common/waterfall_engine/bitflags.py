from __future__ import annotations

from dataclasses import dataclass

from .models import FlagOp

FLAG_BITS = 64
MASK_64 = (1 << FLAG_BITS) - 1


@dataclass(frozen=True)
class BitFlagDelta:
    op: FlagOp = FlagOp.NONE
    mask: int = 0

    @classmethod
    def none(cls) -> "BitFlagDelta":
        return cls()

    @classmethod
    def for_bit(cls, bit: int, op: FlagOp = FlagOp.OR) -> "BitFlagDelta":
        return cls(op=op, mask=1 << bit)


@dataclass(frozen=True)
class BitFlagState:
    """Opaque 64-bit flag carrier.

    The engine never interprets individual bits. Evaluators hand back a
    `BitFlagDelta` and the executor records the before/after snapshots.
    """

    value: int = 0

    def __post_init__(self):
        if self.value < 0 or self.value > MASK_64:
            raise ValueError(f"Bit flag state out of 64-bit range: {self.value}")

    def apply(self, delta: BitFlagDelta) -> "BitFlagState":
        mask = delta.mask & MASK_64
        if delta.op == FlagOp.OR:
            return BitFlagState(self.value | mask)
        if delta.op == FlagOp.AND_NOT:
            return BitFlagState(self.value & ~mask & MASK_64)
        if delta.op == FlagOp.XOR:
            return BitFlagState(self.value ^ mask)
        return self

    def snapshot(self) -> int:
        return self.value

    def is_set(self, bit: int) -> bool:
        return bool(self.value & (1 << bit))

    def merge(self, other: "BitFlagState") -> "BitFlagState":
        return BitFlagState(self.value | other.value)
