from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterator
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from db import models
from domain.accounts import Account, AccountId, AccountRef, AccountState, UserId, WalletAddress, WalletType
from domain.ledger import EntryDraft, EntryKind, IdempotencyKey, LedgerEntry, LedgerEntryId


def _utc(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp


class AccountRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create(self, account: Account) -> Account:
        orm_account = models.AccountOrm(
            id=account.id,
            user_id=account.user_id,
            currency=account.currency,
            wallet_type=account.wallet_type.value,
            balance=account.balance,
            in_order=account.in_order,
            status=account.status,
            state=account.state.value,
            addresses=self._addresses_to_json(account.addresses),
            created_at=account.created_at,
            updated_at=account.updated_at,
            retired_at=account.retired_at,
        )
        self._session.add(orm_account)
        self._session.flush()
        return self._to_domain(orm_account)

    def get(self, ref: AccountRef, *, for_update: bool = False) -> Account | None:
        orm_account = self._row(ref, for_update=for_update)
        if orm_account is None:
            return None
        return self._to_domain(orm_account)

    def list_by_user(self, user_id: str, *, include_retired: bool = False) -> list[Account]:
        stmt = select(models.AccountOrm).where(models.AccountOrm.user_id == user_id)
        if not include_retired:
            stmt = stmt.where(models.AccountOrm.state == AccountState.ACTIVE.value)
        stmt = stmt.order_by(models.AccountOrm.currency, models.AccountOrm.wallet_type)
        return [self._to_domain(row) for row in self._session.scalars(stmt)]

    def save(self, account: Account) -> Account:
        """Persist the mutable fields of an existing account."""
        orm_account = self._session.get(models.AccountOrm, account.id)
        if orm_account is None:
            raise LookupError(f"Account row {account.id} does not exist")
        orm_account.balance = account.balance
        orm_account.in_order = account.in_order
        orm_account.status = account.status
        orm_account.state = account.state.value
        orm_account.addresses = self._addresses_to_json(account.addresses)
        orm_account.updated_at = account.updated_at
        orm_account.retired_at = account.retired_at
        self._session.flush()
        return self._to_domain(orm_account)

    def _row(self, ref: AccountRef, *, for_update: bool) -> models.AccountOrm | None:
        stmt = select(models.AccountOrm).where(
            models.AccountOrm.user_id == ref.user_id,
            models.AccountOrm.currency == ref.currency,
            models.AccountOrm.wallet_type == ref.wallet_type.value,
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.scalars(stmt).one_or_none()

    @staticmethod
    def _addresses_to_json(addresses: dict[str, WalletAddress]) -> dict[str, dict[str, str]]:
        return {
            network: {"address": address.address, "network": address.network, "balance": str(address.balance)}
            for network, address in addresses.items()
        }

    @staticmethod
    def _to_domain(orm_account: models.AccountOrm) -> Account:
        addresses = {
            network: WalletAddress.model_validate(payload) for network, payload in (orm_account.addresses or {}).items()
        }
        return Account(
            id=AccountId(orm_account.id),
            user_id=UserId(orm_account.user_id),
            currency=orm_account.currency,
            wallet_type=WalletType(orm_account.wallet_type),
            balance=orm_account.balance,
            in_order=orm_account.in_order,
            status=orm_account.status,
            state=AccountState(orm_account.state),
            addresses=addresses,
            created_at=_utc(orm_account.created_at),
            updated_at=_utc(orm_account.updated_at),
            retired_at=_utc(orm_account.retired_at) if orm_account.retired_at is not None else None,
        )


class LedgerEntryRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create(self, draft: EntryDraft, *, account_id: UUID, created_at: datetime) -> LedgerEntry:
        orm_entry = models.LedgerEntryOrm(
            idempotency_key=draft.idempotency_key,
            account_id=account_id,
            user_id=draft.account.user_id,
            currency=draft.account.currency,
            wallet_type=draft.account.wallet_type.value,
            amount=draft.amount,
            kind=draft.kind.value,
            reservation=draft.reservation,
            reference=draft.reference,
            created_at=created_at,
        )
        self._session.add(orm_entry)
        self._session.flush()
        return self._to_domain(orm_entry)

    def get_by_key(self, idempotency_key: str) -> LedgerEntry | None:
        stmt = select(models.LedgerEntryOrm).where(models.LedgerEntryOrm.idempotency_key == idempotency_key)
        orm_entry = self._session.scalars(stmt).one_or_none()
        if orm_entry is None:
            return None
        return self._to_domain(orm_entry)

    def iter_for(self, ref: AccountRef, *, batch_size: int = 500) -> Iterator[LedgerEntry]:
        stmt = (
            select(models.LedgerEntryOrm)
            .where(
                models.LedgerEntryOrm.user_id == ref.user_id,
                models.LedgerEntryOrm.currency == ref.currency,
                models.LedgerEntryOrm.wallet_type == ref.wallet_type.value,
            )
            .order_by(models.LedgerEntryOrm.sequence.asc())
            .execution_options(yield_per=batch_size)
        )
        for orm_entry in self._session.scalars(stmt):
            yield self._to_domain(orm_entry)

    @staticmethod
    def _to_domain(orm_entry: models.LedgerEntryOrm) -> LedgerEntry:
        return LedgerEntry(
            id=LedgerEntryId(orm_entry.id),
            sequence=orm_entry.sequence,
            idempotency_key=IdempotencyKey(orm_entry.idempotency_key),
            account=AccountRef(
                user_id=UserId(orm_entry.user_id),
                currency=orm_entry.currency,
                wallet_type=WalletType(orm_entry.wallet_type),
            ),
            amount=orm_entry.amount,
            kind=EntryKind(orm_entry.kind),
            reservation=orm_entry.reservation,
            reference=orm_entry.reference,
            created_at=_utc(orm_entry.created_at),
        )
