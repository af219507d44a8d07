# escrowguard/money.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal


@dataclass(frozen=True)
class Money:
    """
    Integer minor units (cents) plus an ISO 4217 code. Never a float.

    Amounts in different currencies never combine; there is no FX here.
    """

    amount_cents: int
    currency: str

    def __post_init__(self):
        if isinstance(self.amount_cents, bool) or not isinstance(self.amount_cents, int):
            raise TypeError("amount_cents must be an int")
        if not isinstance(self.currency, str) or len(self.currency) != 3:
            raise ValueError("currency must be a 3-letter ISO 4217 code")
        object.__setattr__(self, "currency", self.currency.upper())

    @classmethod
    def zero(cls, currency: str) -> "Money":
        return cls(0, currency)

    @classmethod
    def from_major(cls, amount, currency: str) -> "Money":
        """12.345 -> 1235 cents; rounding is explicit (half up), never float truncation."""
        cents = (Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return cls(int(cents), currency)

    def _check(self, other: "Money") -> None:
        if not isinstance(other, Money):
            raise TypeError("can only combine Money with Money")
        if other.currency != self.currency:
            raise ValueError(f"currency mismatch: {self.currency} vs {other.currency}")

    def __add__(self, other: "Money") -> "Money":
        self._check(other)
        return Money(self.amount_cents + other.amount_cents, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check(other)
        return Money(self.amount_cents - other.amount_cents, self.currency)

    def __neg__(self) -> "Money":
        return Money(-self.amount_cents, self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount_cents < other.amount_cents

    def __le__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount_cents <= other.amount_cents

    def times(self, quantity: int) -> "Money":
        return Money(self.amount_cents * int(quantity), self.currency)

    def percent_floor(self, percent: int) -> "Money":
        # discount math floors
        return Money((self.amount_cents * int(percent)) // 100, self.currency)

    def percent_rounded(self, percent: int) -> "Money":
        # restock math rounds half up
        cents = (Decimal(self.amount_cents) * Decimal(int(percent)) / 100).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        return Money(int(cents), self.currency)

    def clamp_min_zero(self) -> "Money":
        return Money(max(0, self.amount_cents), self.currency)

    def to_major(self) -> Decimal:
        return Decimal(self.amount_cents) / 100
