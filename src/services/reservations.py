from __future__ import annotations

import logging
import threading
from decimal import Decimal

from domain.accounts import Account, AccountRef
from domain.errors import ValidationError
from domain.ledger import EntryDraft, EntryKind, IdempotencyKey, ReservationTicket

from .balance_engine import BalanceEngine

logger = logging.getLogger(__name__)


class ReservationManager:
    """Moves funds between available ``balance`` and reserved ``in_order``.

    Each operation is one atomic ``BalanceEngine.apply_entries`` call whose
    entry keys are derived from the caller's key, so retries are safe.
    Tickets only live in memory and link a reservation to the releases and
    settlements that consume it.
    """

    def __init__(self, engine: BalanceEngine) -> None:
        self._engine = engine
        self._tickets: dict[IdempotencyKey, ReservationTicket] = {}
        self._tickets_lock = threading.Lock()

    def reserve(
        self,
        ref: AccountRef,
        amount: Decimal,
        *,
        idempotency_key: str,
        kind: EntryKind = EntryKind.TRADE,
        reference: str | None = None,
    ) -> Account:
        _require_positive(amount)
        key = IdempotencyKey(idempotency_key)
        account = self._engine.apply_entries(
            [
                self._draft(ref, -amount, kind, f"{key}:available", reservation=False, reference=reference),
                self._draft(ref, amount, kind, f"{key}:in-order", reservation=True, reference=reference),
            ]
        )[-1]
        with self._tickets_lock:
            self._tickets.setdefault(
                key, ReservationTicket(key=key, account=ref, amount=amount, remaining=amount, reference=reference)
            )
        logger.info("Reserved %s on %s (key=%s)", amount, ref, key)
        return account

    def release(
        self,
        ref: AccountRef,
        amount: Decimal,
        *,
        idempotency_key: str,
        kind: EntryKind = EntryKind.TRADE,
        reference: str | None = None,
        ticket: str | None = None,
    ) -> Account:
        """Return reserved funds to the available balance, e.g. on order cancel."""
        _require_positive(amount)
        key = IdempotencyKey(idempotency_key)
        claimed = self._claim_ticket(ticket, ref, amount, key)
        try:
            account = self._engine.apply_entries(
                [
                    self._draft(ref, -amount, kind, f"{key}:in-order", reservation=True, reference=reference),
                    self._draft(ref, amount, kind, f"{key}:available", reservation=False, reference=reference),
                ]
            )[-1]
        except Exception:
            if claimed and ticket is not None:
                self._unclaim_ticket(ticket, amount, key)
            raise
        logger.info("Released %s on %s (key=%s)", amount, ref, key)
        return account

    def settle(
        self,
        ref: AccountRef,
        amount: Decimal,
        *,
        idempotency_key: str,
        kind: EntryKind = EntryKind.TRADE,
        reference: str | None = None,
        ticket: str | None = None,
    ) -> Account:
        """Consume reserved funds for good, e.g. on trade execution."""
        _require_positive(amount)
        key = IdempotencyKey(idempotency_key)
        claimed = self._claim_ticket(ticket, ref, amount, key)
        try:
            account = self._engine.apply_entry(
                self._draft(ref, -amount, kind, f"{key}:in-order", reservation=True, reference=reference)
            )
        except Exception:
            if claimed and ticket is not None:
                self._unclaim_ticket(ticket, amount, key)
            raise
        logger.info("Settled %s on %s (key=%s)", amount, ref, key)
        return account

    def ticket(self, key: str) -> ReservationTicket | None:
        with self._tickets_lock:
            ticket = self._tickets.get(IdempotencyKey(key))
            return ticket.model_copy(deep=True) if ticket is not None else None

    def open_tickets(self, ref: AccountRef) -> list[ReservationTicket]:
        with self._tickets_lock:
            return [t.model_copy(deep=True) for t in self._tickets.values() if t.account == ref and t.is_open]

    def _claim_ticket(self, ticket_key: str | None, ref: AccountRef, amount: Decimal, key: IdempotencyKey) -> bool:
        """Take ``amount`` off the ticket before the entries are applied.

        Returns False when there is nothing to claim: no ticket was given, or
        ``key`` already consumed it.
        """
        if ticket_key is None:
            return False
        with self._tickets_lock:
            ticket = self._tickets.get(IdempotencyKey(ticket_key))
            if ticket is None:
                raise ValidationError(f"unknown reservation ticket {ticket_key}")
            if ticket.account != ref:
                raise ValidationError(f"reservation ticket {ticket_key} belongs to {ticket.account}, not {ref}")
            if key in ticket.closed_by:
                return False
            if amount > ticket.remaining:
                raise ValidationError(
                    f"reservation ticket {ticket_key} has {ticket.remaining} remaining, cannot consume {amount}"
                )
            ticket.remaining -= amount
            ticket.closed_by.append(key)
            return True

    def _unclaim_ticket(self, ticket_key: str, amount: Decimal, key: IdempotencyKey) -> None:
        with self._tickets_lock:
            ticket = self._tickets[IdempotencyKey(ticket_key)]
            ticket.remaining += amount
            ticket.closed_by.remove(key)

    @staticmethod
    def _draft(
        ref: AccountRef,
        amount: Decimal,
        kind: EntryKind,
        key: str,
        *,
        reservation: bool,
        reference: str | None,
    ) -> EntryDraft:
        return EntryDraft(
            account=ref,
            amount=amount,
            kind=kind,
            idempotency_key=IdempotencyKey(key),
            reservation=reservation,
            reference=reference,
        )


def _require_positive(amount: Decimal) -> None:
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"amount must be positive, got {amount}")
