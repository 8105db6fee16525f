from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.repositories import AccountRepository, LedgerEntryRepository
from domain.accounts import AccountRef
from domain.errors import DuplicateEntry, NotFound
from domain.ledger import EntryDraft, LedgerEntry

logger = logging.getLogger(__name__)


class Ledger:
    """Append-only log of balance-changing entries, bound to one session.

    Entries are write-once: there is no update or delete. ``append`` only
    records the entry; the balance engine appends and moves balances in the
    same transaction.
    """

    def __init__(self, session: Session) -> None:
        self._session = session
        self._entries = LedgerEntryRepository(session)
        self._accounts = AccountRepository(session)

    def append(self, draft: EntryDraft) -> LedgerEntry:
        """Record ``draft`` once per idempotency key.

        A retry carrying the same payload returns the committed entry; reusing
        the key for a different payload raises DuplicateEntry.
        """
        entry, _ = self.record(draft)
        return entry

    def record(self, draft: EntryDraft) -> tuple[LedgerEntry, bool]:
        """Like ``append``, also telling whether this call inserted the entry."""
        draft.validate_for_append()

        existing = self._entries.get_by_key(draft.idempotency_key)
        if existing is not None:
            return self._replay(draft, existing), False

        account = self._accounts.get(draft.account)
        if account is None:
            raise NotFound(draft.account)

        try:
            with self._session.begin_nested():
                entry = self._entries.create(draft, account_id=account.id, created_at=datetime.now(timezone.utc))
        except IntegrityError:
            existing = self._entries.get_by_key(draft.idempotency_key)
            if existing is None:
                raise
            return self._replay(draft, existing), False

        logger.debug("Appended entry %s key=%s amount=%s", entry.sequence, entry.idempotency_key, entry.amount)
        return entry, True

    def get_by_key(self, idempotency_key: str) -> LedgerEntry | None:
        return self._entries.get_by_key(idempotency_key)

    def entries_for(self, ref: AccountRef) -> Iterator[LedgerEntry]:
        """Lazily yield the account's entries in creation order."""
        return self._entries.iter_for(ref)

    @staticmethod
    def _replay(draft: EntryDraft, existing: LedgerEntry) -> LedgerEntry:
        if not draft.same_payload(existing):
            raise DuplicateEntry(draft.idempotency_key, existing=existing)
        logger.debug("Idempotent replay of key=%s", draft.idempotency_key)
        return existing
