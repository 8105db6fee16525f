from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.repositories import AccountRepository
from domain.accounts import Account, AccountRef, AccountState, WalletAddress, WalletType
from domain.errors import NotFound, ValidationError

logger = logging.getLogger(__name__)


class AccountStore:
    """Accounts keyed by (user_id, currency, wallet_type), bound to one session.

    The store never touches ``balance`` or ``in_order``; those belong to the
    balance engine. Callers own the session transaction.
    """

    def __init__(self, session: Session) -> None:
        self._session = session
        self._accounts = AccountRepository(session)

    def get_or_create(
        self,
        user_id: str,
        currency: str,
        wallet_type: WalletType | str,
        *,
        for_update: bool = False,
    ) -> Account:
        ref = AccountRef.of(user_id, currency, wallet_type)
        existing = self._accounts.get(ref, for_update=for_update)
        if existing is not None:
            return existing

        now = _now()
        try:
            with self._session.begin_nested():
                created = self._accounts.create(
                    Account(
                        user_id=ref.user_id,
                        currency=ref.currency,
                        wallet_type=ref.wallet_type,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError:
            # Another writer created the same triple first.
            concurrent = self._accounts.get(ref, for_update=for_update)
            if concurrent is None:
                raise
            return concurrent

        logger.info("Created account %s", ref)
        return created

    def get(self, user_id: str, currency: str, wallet_type: WalletType | str) -> Account:
        ref = AccountRef.of(user_id, currency, wallet_type)
        account = self._accounts.get(ref)
        if account is None:
            raise NotFound(ref)
        return account

    def list_by_user(self, user_id: str, *, include_retired: bool = False) -> list[Account]:
        return self._accounts.list_by_user(user_id, include_retired=include_retired)

    def set_status(self, ref: AccountRef, *, active: bool) -> Account:
        account = self._require(ref)
        if account.status == active:
            return account
        logger.info("Account %s %s", ref, "unfrozen" if active else "frozen")
        return self._accounts.save(account.model_copy(update={"status": active, "updated_at": _now()}))

    def retire(self, ref: AccountRef) -> Account:
        account = self._require(ref)
        if account.state == AccountState.RETIRED:
            return account
        if account.balance != 0 or account.in_order != 0:
            raise ValidationError(
                f"Account {ref} cannot be retired with balance={account.balance} in_order={account.in_order}"
            )
        now = _now()
        logger.info("Retiring account %s", ref)
        return self._accounts.save(
            account.model_copy(update={"state": AccountState.RETIRED, "retired_at": now, "updated_at": now})
        )

    def set_address(self, ref: AccountRef, address: WalletAddress) -> Account:
        account = self._require(ref)
        if account.wallet_type == WalletType.FIAT:
            raise ValidationError(f"FIAT account {ref} cannot hold on-chain addresses")
        addresses = {**account.addresses, address.network: address}
        return self._accounts.save(account.model_copy(update={"addresses": addresses, "updated_at": _now()}))

    def _require(self, ref: AccountRef) -> Account:
        account = self._accounts.get(ref, for_update=True)
        if account is None:
            raise NotFound(ref)
        return account


def _now() -> datetime:
    return datetime.now(timezone.utc)
