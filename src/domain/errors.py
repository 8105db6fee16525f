from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .accounts import AccountRef
    from .ledger import LedgerEntry


class BalanceError(Exception):
    """Base class for every error raised by the wallet ledger."""


class ValidationError(BalanceError, ValueError):
    pass


class NotFound(BalanceError):
    def __init__(self, ref: AccountRef) -> None:
        self.ref = ref
        super().__init__(f"Account not found: {ref}")


class AccountInactive(BalanceError):
    def __init__(self, ref: AccountRef, *, reason: str) -> None:
        self.ref = ref
        self.reason = reason
        super().__init__(f"Account {ref} is {reason}")


class InsufficientAmount(BalanceError):
    field = "amount"

    def __init__(self, *, ref: AccountRef, attempted_amount: Decimal, available: Decimal) -> None:
        self.ref = ref
        self.attempted_amount = attempted_amount
        self.available = available
        super().__init__(
            f"Insufficient {self.field} for account={ref} attempted={attempted_amount} available={available}"
        )


class InsufficientFunds(InsufficientAmount):
    field = "balance"


class InsufficientReservation(InsufficientAmount):
    field = "in_order"


class DuplicateEntry(BalanceError):
    """An idempotency key is already recorded for a different payload."""

    def __init__(self, idempotency_key: str, *, existing: LedgerEntry | None = None) -> None:
        self.idempotency_key = idempotency_key
        self.existing = existing
        super().__init__(f"Idempotency key already recorded: {idempotency_key}")


class StoreUnavailable(BalanceError):
    pass
