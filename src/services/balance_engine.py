from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Iterator, Sequence

from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from config import config
from db.db import Database
from db.repositories import AccountRepository
from domain.accounts import Account, AccountRef, WalletAddress, WalletType
from domain.errors import (
    AccountInactive,
    DuplicateEntry,
    InsufficientFunds,
    InsufficientReservation,
    StoreUnavailable,
    ValidationError,
)
from domain.ledger import EntryDraft, EntryKind, LedgerEntry

from .account_store import AccountStore
from .ledger import Ledger
from .locks import AccountLocks

logger = logging.getLogger(__name__)


class BalanceEngine:
    """The only component allowed to move ``balance`` and ``in_order``.

    Every mutation holds the per-account locks of the accounts it touches and
    runs in a single write transaction: the idempotency lookup, the
    non-negativity check against the freshly read row, the ledger append and
    the account update either all commit or none do.
    """

    def __init__(self, database: Database, *, lock_timeout: float | None = None) -> None:
        self._db = database
        if lock_timeout is None:
            lock_timeout = config().lock_timeout_seconds
        self.locks = AccountLocks(timeout=lock_timeout)

    def apply_entry(self, draft: EntryDraft) -> Account:
        return self.apply_entries([draft])[0]

    def apply_transfer(self, from_draft: EntryDraft, to_draft: EntryDraft) -> tuple[Account, Account]:
        """Move funds between two accounts of the same currency, all or nothing."""
        if from_draft.kind != EntryKind.TRANSFER_OUT or to_draft.kind != EntryKind.TRANSFER_IN:
            raise ValidationError("transfer requires a TRANSFER_OUT source and a TRANSFER_IN destination")
        if from_draft.amount >= 0 or to_draft.amount != -from_draft.amount:
            raise ValidationError(
                f"transfer amounts must be a debit and a credit of equal size, got "
                f"{from_draft.amount} and {to_draft.amount}"
            )
        if from_draft.reservation or to_draft.reservation:
            raise ValidationError("transfer entries cannot target in_order")
        if from_draft.account == to_draft.account:
            raise ValidationError(f"transfer source and destination are the same account {from_draft.account}")
        if from_draft.account.currency != to_draft.account.currency:
            raise ValidationError(
                f"transfer between currencies {from_draft.account.currency} and {to_draft.account.currency}"
            )
        if from_draft.reference and to_draft.reference and from_draft.reference != to_draft.reference:
            raise ValidationError("transfer entries must share one reference")

        reference = from_draft.reference or to_draft.reference or from_draft.idempotency_key
        source, destination = self.apply_entries(
            [
                from_draft.model_copy(update={"reference": reference}),
                to_draft.model_copy(update={"reference": reference}),
            ]
        )
        return source, destination

    def apply_entries(self, drafts: Sequence[EntryDraft]) -> list[Account]:
        """Apply several entries atomically; returns each draft's account after the batch.

        Replaying a fully recorded batch returns the current accounts without
        changes. A batch where only some keys are recorded raises DuplicateEntry.
        """
        if not drafts:
            raise ValidationError("at least one entry is required")
        for draft in drafts:
            draft.validate_for_append()
        keys = [draft.idempotency_key for draft in drafts]
        if len(set(keys)) != len(keys):
            raise ValidationError(f"idempotency keys must be distinct within a batch: {keys}")
        refs = {AccountRef.of(d.account.user_id, d.account.currency, d.account.wallet_type) for d in drafts}

        with self._unit_of_work(refs) as session:
            store = AccountStore(session)
            ledger = Ledger(session)

            accounts: dict[AccountRef, Account] = {}
            for ref in sorted(refs, key=lambda r: r.sort_key):
                accounts[ref] = store.get_or_create(ref.user_id, ref.currency, ref.wallet_type, for_update=True)

            # Keys are looked up only once the account rows are locked.
            recorded = [ledger.get_by_key(draft.idempotency_key) for draft in drafts]
            if all(entry is not None for entry in recorded):
                return self._replay(store, drafts, recorded)
            for draft, entry in zip(drafts, recorded):
                if entry is not None:
                    raise DuplicateEntry(draft.idempotency_key, existing=entry)

            for ref, account in accounts.items():
                if not account.is_active:
                    logger.warning("Rejected mutation of inactive account %s", ref)
                    raise AccountInactive(ref, reason="frozen" if not account.status else "retired")

            now = datetime.now(timezone.utc)
            for draft in drafts:
                accounts[draft.account] = self._apply(ledger, accounts[draft.account], draft, now)

            repository = AccountRepository(session)
            saved = {ref: repository.save(account) for ref, account in accounts.items()}

        logger.info("Committed %d entries: %s", len(drafts), ", ".join(keys))
        return [saved[draft.account] for draft in drafts]

    def open_account(self, user_id: str, currency: str, wallet_type: WalletType | str) -> Account:
        ref = AccountRef.of(user_id, currency, wallet_type)
        with self._unit_of_work([ref]) as session:
            return AccountStore(session).get_or_create(user_id, currency, wallet_type)

    def freeze(self, ref: AccountRef) -> Account:
        with self._unit_of_work([ref]) as session:
            return AccountStore(session).set_status(ref, active=False)

    def unfreeze(self, ref: AccountRef) -> Account:
        with self._unit_of_work([ref]) as session:
            return AccountStore(session).set_status(ref, active=True)

    def retire(self, ref: AccountRef) -> Account:
        with self._unit_of_work([ref]) as session:
            return AccountStore(session).retire(ref)

    def set_address(self, ref: AccountRef, address: WalletAddress) -> Account:
        with self._unit_of_work([ref]) as session:
            return AccountStore(session).set_address(ref, address)

    def get_account(self, ref: AccountRef) -> Account:
        with self._read_session() as session:
            return AccountStore(session).get(ref.user_id, ref.currency, ref.wallet_type)

    def list_accounts(self, user_id: str, *, include_retired: bool = False) -> list[Account]:
        with self._read_session() as session:
            return AccountStore(session).list_by_user(user_id, include_retired=include_retired)

    def account_statement(self, ref: AccountRef) -> tuple[Account, list[LedgerEntry]]:
        """The account and all of its entries, read from one snapshot."""
        with self._read_session() as session:
            account = AccountStore(session).get(ref.user_id, ref.currency, ref.wallet_type)
            return account, list(Ledger(session).entries_for(ref))

    def entries_for(self, ref: AccountRef) -> Iterator[LedgerEntry]:
        """Lazily stream an account's entries; each call reads a fresh snapshot.

        The read session stays open until the iterator is exhausted or closed,
        so callers that stop early should close it, e.g. with
        ``contextlib.closing``.
        """
        with self._read_session() as session:
            yield from Ledger(session).entries_for(ref)

    @staticmethod
    def _apply(ledger: Ledger, account: Account, draft: EntryDraft, now: datetime) -> Account:
        existing = ledger.get_by_key(draft.idempotency_key)
        if existing is not None:
            if not draft.same_payload(existing):
                raise DuplicateEntry(draft.idempotency_key, existing=existing)
            logger.debug("Key=%s already recorded, %s left unchanged", draft.idempotency_key, draft.account)
            return account

        field = "in_order" if draft.reservation else "balance"
        current = account.in_order if draft.reservation else account.balance
        candidate = current + draft.amount
        if candidate < 0:
            logger.warning(
                "Rejected key=%s on %s: %s=%s amount=%s",
                draft.idempotency_key,
                draft.account,
                field,
                current,
                draft.amount,
            )
            error = InsufficientReservation if draft.reservation else InsufficientFunds
            raise error(ref=draft.account, attempted_amount=draft.amount, available=current)

        _, created = ledger.record(draft)
        if not created:
            return account
        return account.model_copy(update={field: candidate, "updated_at": now})

    @staticmethod
    def _replay(
        store: AccountStore, drafts: Sequence[EntryDraft], recorded: Sequence[LedgerEntry | None]
    ) -> list[Account]:
        for draft, entry in zip(drafts, recorded):
            if entry is None or not draft.same_payload(entry):
                raise DuplicateEntry(draft.idempotency_key, existing=entry)
        logger.debug("Replayed already applied keys: %s", ", ".join(d.idempotency_key for d in drafts))
        return [store.get(d.account.user_id, d.account.currency, d.account.wallet_type) for d in drafts]

    @contextmanager
    def _unit_of_work(self, refs: Iterable[AccountRef]) -> Iterator[Session]:
        with self.locks.hold(refs):
            try:
                with self._db.write() as session, session.begin():
                    yield session
            except (OperationalError, PoolTimeoutError) as err:
                logger.warning("Store unavailable, transaction rolled back: %s", err)
                raise StoreUnavailable(str(err)) from err

    @contextmanager
    def _read_session(self) -> Iterator[Session]:
        try:
            with self._db.read() as session:
                yield session
        except (OperationalError, PoolTimeoutError) as err:
            raise StoreUnavailable(str(err)) from err
