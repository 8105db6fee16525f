from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import NewType
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from .accounts import AccountRef
from .errors import ValidationError

LedgerEntryId = NewType("LedgerEntryId", UUID)
IdempotencyKey = NewType("IdempotencyKey", str)


class EntryKind(StrEnum):
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    TRADE = "TRADE"
    FEE = "FEE"
    ADJUSTMENT = "ADJUSTMENT"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"


class EntryDraft(BaseModel):
    """A requested balance change, not yet committed.

    Amount sign convention:
    - Positive amount credits the account.
    - Negative amount debits the account.

    With ``reservation`` set the amount moves ``in_order`` instead of ``balance``.
    """

    model_config = ConfigDict(frozen=True)

    account: AccountRef
    amount: Decimal
    kind: EntryKind
    idempotency_key: IdempotencyKey
    reservation: bool = False
    reference: str | None = None

    def validate_for_append(self) -> None:
        if not self.idempotency_key:
            raise ValidationError("idempotency_key must be non-empty")
        if not self.amount.is_finite():
            raise ValidationError(f"amount must be finite, got {self.amount}")
        if self.amount == 0:
            raise ValidationError("amount must be non-zero")
        try:
            EntryKind(self.kind)
        except ValueError:
            raise ValidationError(f"unrecognized entry kind {self.kind!r}") from None

    def same_payload(self, entry: LedgerEntry) -> bool:
        """True when a committed entry records exactly this request."""
        return (
            entry.account == self.account
            and entry.amount == self.amount
            and entry.kind == self.kind
            and entry.reservation == self.reservation
            and entry.reference == self.reference
        )


class LedgerEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: LedgerEntryId = LedgerEntryId(Field(default_factory=uuid4))
    sequence: int
    idempotency_key: IdempotencyKey
    account: AccountRef
    amount: Decimal
    kind: EntryKind
    reservation: bool = False
    reference: str | None = None
    created_at: datetime


class ReservationTicket(BaseModel):
    """In-memory link between a reservation and the events that close it."""

    key: IdempotencyKey
    account: AccountRef
    amount: Decimal
    remaining: Decimal
    reference: str | None = None
    closed_by: list[IdempotencyKey] = Field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.remaining > 0
