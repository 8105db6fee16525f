from __future__ import annotations

import random
import threading
from contextlib import closing
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import text

from config import AppSettings
from db.db import Database, init_db
from domain.accounts import AccountRef, WalletAddress, WalletType
from domain.errors import (
    AccountInactive,
    BalanceError,
    DuplicateEntry,
    InsufficientFunds,
    InsufficientReservation,
    NotFound,
    StoreUnavailable,
    ValidationError,
)
from domain.ledger import EntryDraft, EntryKind
from services.account_store import AccountStore
from services.balance_engine import BalanceEngine
from services.ledger import Ledger
from tests.constants import BTC_FUTURES, BTC_SPOT, LOCK_TIMEOUT_SECONDS, OTHER_BTC_SPOT, USD_FIAT, USER
from tests.helpers.drafts import make_draft, transfer_drafts


def test_credit_creates_account_on_first_use(engine: BalanceEngine) -> None:
    account = engine.apply_entry(make_draft("100", key="dep-1"))

    assert account.ref == USD_FIAT
    assert account.balance == Decimal("100")
    assert account.in_order == Decimal(0)
    assert engine.get_account(USD_FIAT) == account


def test_replay_is_a_no_op(engine: BalanceEngine) -> None:
    first = engine.apply_entry(make_draft("100", key="dep-1"))
    second = engine.apply_entry(make_draft("100", key="dep-1"))

    assert second.balance == first.balance == Decimal("100")
    assert len(list(engine.entries_for(USD_FIAT))) == 1


def test_key_reuse_with_other_payload_is_rejected(engine: BalanceEngine) -> None:
    engine.apply_entry(make_draft("100", key="dep-1"))

    with pytest.raises(DuplicateEntry):
        engine.apply_entry(make_draft("50", key="dep-1"))

    assert engine.get_account(USD_FIAT).balance == Decimal("100")


def test_debit_beyond_balance_leaves_no_trace(engine: BalanceEngine) -> None:
    engine.apply_entry(make_draft("10", key="dep-1"))

    with pytest.raises(InsufficientFunds) as exc_info:
        engine.apply_entry(make_draft("-10.01", key="wd-1", kind=EntryKind.WITHDRAWAL))

    assert exc_info.value.available == Decimal("10")
    assert exc_info.value.attempted_amount == Decimal("-10.01")
    assert engine.get_account(USD_FIAT).balance == Decimal("10")
    assert [e.idempotency_key for e in engine.entries_for(USD_FIAT)] == ["dep-1"]


def test_failed_first_debit_does_not_create_account(engine: BalanceEngine) -> None:
    with pytest.raises(InsufficientFunds):
        engine.apply_entry(make_draft("-1", account=BTC_SPOT, kind=EntryKind.WITHDRAWAL))

    with pytest.raises(NotFound):
        engine.get_account(BTC_SPOT)


def test_exact_debit_reaches_zero(engine: BalanceEngine) -> None:
    engine.apply_entry(make_draft("10"))

    account = engine.apply_entry(make_draft("-10", kind=EntryKind.WITHDRAWAL))

    assert account.balance == Decimal(0)


def test_reservation_debit_beyond_in_order_is_rejected(engine: BalanceEngine) -> None:
    engine.apply_entry(make_draft("10"))

    with pytest.raises(InsufficientReservation) as exc_info:
        engine.apply_entry(make_draft("-1", kind=EntryKind.TRADE, reservation=True))

    assert exc_info.value.field == "in_order"
    assert exc_info.value.available == Decimal(0)


@pytest.mark.parametrize("currency", ["", "   "])
def test_empty_currency_is_rejected(engine: BalanceEngine, currency: str) -> None:
    ref = AccountRef.model_construct(user_id=USER, currency=currency, wallet_type=WalletType.SPOT)

    with pytest.raises(ValidationError):
        engine.apply_entry(make_draft("1", account=ref))

    assert engine.list_accounts(USER) == []


def test_all_errors_share_a_base_class() -> None:
    for error in (ValidationError, NotFound, AccountInactive, InsufficientFunds, DuplicateEntry, StoreUnavailable):
        assert issubclass(error, BalanceError)


def test_concurrent_debits_cannot_overdraw(engine: BalanceEngine) -> None:
    engine.apply_entry(make_draft("10"))
    barrier = threading.Barrier(2)
    outcomes: list[object] = []
    outcomes_lock = threading.Lock()

    def withdraw(key: str) -> None:
        barrier.wait()
        try:
            result: object = engine.apply_entry(make_draft("-8", kind=EntryKind.WITHDRAWAL, key=key))
        except BalanceError as err:
            result = err
        with outcomes_lock:
            outcomes.append(result)

    threads = [threading.Thread(target=withdraw, args=(f"race-{i}",)) for i in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(isinstance(outcome, InsufficientFunds) for outcome in outcomes) == 1
    assert sum(not isinstance(outcome, BalanceError) for outcome in outcomes) == 1
    assert engine.get_account(USD_FIAT).balance == Decimal("2")


def test_concurrent_transfers_in_opposite_directions_do_not_deadlock(engine: BalanceEngine) -> None:
    engine.apply_entry(make_draft("50", account=BTC_SPOT))
    engine.apply_entry(make_draft("50", account=BTC_FUTURES))
    barrier = threading.Barrier(2)
    errors: list[BaseException] = []

    def move(source: AccountRef, destination: AccountRef, prefix: str) -> None:
        barrier.wait()
        try:
            for i in range(10):
                engine.apply_transfer(*transfer_drafts(source, destination, "1", key=f"{prefix}-{i}"))
        except BalanceError as err:
            errors.append(err)

    threads = [
        threading.Thread(target=move, args=(BTC_SPOT, BTC_FUTURES, "spot-to-futures")),
        threading.Thread(target=move, args=(BTC_FUTURES, BTC_SPOT, "futures-to-spot")),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    spot = engine.get_account(BTC_SPOT)
    futures = engine.get_account(BTC_FUTURES)
    assert spot.balance + futures.balance == Decimal("100")


def test_lock_timeout_raises_store_unavailable(database: Database) -> None:
    impatient = BalanceEngine(database, lock_timeout=0.05)

    with impatient.locks.hold([USD_FIAT]):
        with pytest.raises(StoreUnavailable):
            impatient.apply_entry(make_draft("1"))

    assert impatient.apply_entry(make_draft("1")).balance == Decimal("1")


def test_locked_database_raises_store_unavailable(settings: AppSettings, database: Database) -> None:
    impatient_db = init_db(settings.model_copy(update={"store_timeout_seconds": 0.05}))
    impatient = BalanceEngine(impatient_db, lock_timeout=LOCK_TIMEOUT_SECONDS)
    try:
        with database.write() as blocker:
            # The first statement opens BEGIN IMMEDIATE and holds the write lock.
            blocker.execute(text("SELECT 1"))
            with pytest.raises(StoreUnavailable):
                impatient.apply_entry(make_draft("1"))

        assert impatient.apply_entry(make_draft("1")).balance == Decimal("1")
    finally:
        impatient_db.dispose()


def test_apply_skips_balance_for_recorded_key(engine: BalanceEngine, database: Database) -> None:
    draft = make_draft("100", key="dep-1")
    engine.apply_entry(draft)

    with database.write() as session, session.begin():
        account = AccountStore(session).get(USER, "USD", "FIAT")
        result = BalanceEngine._apply(Ledger(session), account, draft, datetime.now(timezone.utc))

    assert result.balance == Decimal("100")
    assert engine.get_account(USD_FIAT).balance == Decimal("100")
    assert len(list(engine.entries_for(USD_FIAT))) == 1


def test_apply_rejects_recorded_key_with_other_payload(engine: BalanceEngine, database: Database) -> None:
    engine.apply_entry(make_draft("100", key="dep-1"))

    with pytest.raises(DuplicateEntry):
        with database.write() as session, session.begin():
            account = AccountStore(session).get(USER, "USD", "FIAT")
            BalanceEngine._apply(Ledger(session), account, make_draft("5", key="dep-1"), datetime.now(timezone.utc))

    assert engine.get_account(USD_FIAT).balance == Decimal("100")


def test_replay_on_frozen_account_returns_current_state(engine: BalanceEngine) -> None:
    engine.apply_entry(make_draft("100", key="dep-1"))
    engine.freeze(USD_FIAT)

    account = engine.apply_entry(make_draft("100", key="dep-1"))

    assert account.balance == Decimal("100")
    assert account.status is False


def test_frozen_account_rejects_mutations(engine: BalanceEngine) -> None:
    engine.apply_entry(make_draft("10"))
    engine.freeze(USD_FIAT)

    with pytest.raises(AccountInactive) as exc_info:
        engine.apply_entry(make_draft("5"))

    assert exc_info.value.reason == "frozen"
    engine.unfreeze(USD_FIAT)
    assert engine.apply_entry(make_draft("5")).balance == Decimal("15")


def test_retired_account_rejects_mutations(engine: BalanceEngine) -> None:
    engine.open_account(USER, "BTC", WalletType.ECO)
    ref = AccountRef.of(USER, "BTC", "ECO")
    engine.retire(ref)

    with pytest.raises(AccountInactive) as exc_info:
        engine.apply_entry(make_draft("1", account=ref))

    assert exc_info.value.reason == "retired"
    assert engine.list_accounts(USER) == []
    assert len(engine.list_accounts(USER, include_retired=True)) == 1


def test_transfer_conserves_total(engine: BalanceEngine) -> None:
    engine.apply_entry(make_draft("5", account=BTC_SPOT))

    source, destination = engine.apply_transfer(*transfer_drafts(BTC_SPOT, BTC_FUTURES, "2", key="tr-1"))

    assert source.balance == Decimal("3")
    assert destination.balance == Decimal("2")
    entries = list(engine.entries_for(BTC_SPOT)) + list(engine.entries_for(BTC_FUTURES))
    assert {e.reference for e in entries if e.kind != EntryKind.DEPOSIT} == {"tr-1:out"}


def test_transfer_keeps_caller_reference(engine: BalanceEngine) -> None:
    engine.apply_entry(make_draft("5", account=BTC_SPOT))

    engine.apply_transfer(*transfer_drafts(BTC_SPOT, OTHER_BTC_SPOT, "1", key="tr-1", reference="pay-7"))

    (incoming,) = list(engine.entries_for(OTHER_BTC_SPOT))
    assert incoming.reference == "pay-7"
    assert incoming.kind == EntryKind.TRANSFER_IN


def test_failed_transfer_changes_nothing(engine: BalanceEngine) -> None:
    engine.apply_entry(make_draft("1", account=BTC_SPOT))

    with pytest.raises(InsufficientFunds):
        engine.apply_transfer(*transfer_drafts(BTC_SPOT, BTC_FUTURES, "2", key="tr-1"))

    assert engine.get_account(BTC_SPOT).balance == Decimal("1")
    with pytest.raises(NotFound):
        engine.get_account(BTC_FUTURES)


def test_transfer_to_frozen_account_changes_nothing(engine: BalanceEngine) -> None:
    engine.apply_entry(make_draft("5", account=BTC_SPOT))
    engine.open_account(USER, "BTC", "FUTURES")
    engine.freeze(BTC_FUTURES)

    with pytest.raises(AccountInactive):
        engine.apply_transfer(*transfer_drafts(BTC_SPOT, BTC_FUTURES, "2", key="tr-1"))

    assert engine.get_account(BTC_SPOT).balance == Decimal("5")
    assert engine.get_account(BTC_FUTURES).balance == Decimal(0)
    assert all(e.kind == EntryKind.DEPOSIT for e in engine.entries_for(BTC_SPOT))


def test_transfer_replay_is_a_no_op(engine: BalanceEngine) -> None:
    engine.apply_entry(make_draft("5", account=BTC_SPOT))
    drafts = transfer_drafts(BTC_SPOT, BTC_FUTURES, "2", key="tr-1")

    engine.apply_transfer(*drafts)
    source, destination = engine.apply_transfer(*drafts)

    assert source.balance == Decimal("3")
    assert destination.balance == Decimal("2")
    assert len(list(engine.entries_for(BTC_FUTURES))) == 1


@pytest.mark.parametrize(
    "drafts",
    [
        transfer_drafts(BTC_SPOT, BTC_SPOT, "1", key="same"),
        transfer_drafts(BTC_SPOT, USD_FIAT, "1", key="currency"),
        (
            make_draft("-1", account=BTC_SPOT, kind=EntryKind.TRANSFER_OUT, reference="mine"),
            make_draft("1", account=BTC_FUTURES, kind=EntryKind.TRANSFER_IN, reference="other"),
        ),
        (
            make_draft("-1", account=BTC_SPOT, kind=EntryKind.WITHDRAWAL),
            make_draft("1", account=BTC_FUTURES, kind=EntryKind.TRANSFER_IN),
        ),
        (
            make_draft("-1", account=BTC_SPOT, kind=EntryKind.TRANSFER_OUT),
            make_draft("2", account=BTC_FUTURES, kind=EntryKind.TRANSFER_IN),
        ),
    ],
    ids=["same-account", "cross-currency", "reference-mismatch", "wrong-kind", "unbalanced"],
)
def test_transfer_validation(engine: BalanceEngine, drafts: tuple[EntryDraft, EntryDraft]) -> None:
    engine.apply_entry(make_draft("5", account=BTC_SPOT))
    from_draft, to_draft = drafts

    with pytest.raises(ValidationError):
        engine.apply_transfer(from_draft, to_draft)

    assert engine.get_account(BTC_SPOT).balance == Decimal("5")


def test_partially_recorded_batch_is_rejected(engine: BalanceEngine) -> None:
    engine.apply_entry(make_draft("10", key="k1"))

    with pytest.raises(DuplicateEntry) as exc_info:
        engine.apply_entries([make_draft("10", key="k1"), make_draft("3", key="k2")])

    assert exc_info.value.idempotency_key == "k1"
    assert [e.idempotency_key for e in engine.entries_for(USD_FIAT)] == ["k1"]


def test_batch_rejects_repeated_keys(engine: BalanceEngine) -> None:
    with pytest.raises(ValidationError):
        engine.apply_entries([make_draft("1", key="k1"), make_draft("2", key="k1")])


def test_set_address_through_engine(engine: BalanceEngine) -> None:
    engine.open_account(USER, "BTC", "SPOT")

    account = engine.set_address(BTC_SPOT, WalletAddress(address="bc1qexample", network="BTC"))

    assert account.addresses["BTC"].address == "bc1qexample"
    assert engine.get_account(BTC_SPOT).addresses == account.addresses


def test_random_sequences_keep_balances_consistent_with_entries(engine: BalanceEngine) -> None:
    rng = random.Random(20240501)
    applied = 0

    for i in range(150):
        reservation = rng.random() < 0.3
        amount = Decimal(rng.randint(-40, 60)) / 4 or Decimal("0.25")
        draft = make_draft(amount, key=f"rnd-{i}", kind=EntryKind.ADJUSTMENT, reservation=reservation)
        try:
            account = engine.apply_entry(draft)
        except (InsufficientFunds, InsufficientReservation):
            continue
        applied += 1
        assert account.balance >= 0
        assert account.in_order >= 0

    entries = list(engine.entries_for(USD_FIAT))
    account = engine.get_account(USD_FIAT)
    assert len(entries) == applied
    assert sum((e.amount for e in entries if not e.reservation), Decimal(0)) == account.balance
    assert sum((e.amount for e in entries if e.reservation), Decimal(0)) == account.in_order


def test_account_statement_reads_account_and_entries(engine: BalanceEngine) -> None:
    engine.apply_entry(make_draft("10", key="dep-1"))
    engine.apply_entry(make_draft("-4", key="wd-1", kind=EntryKind.WITHDRAWAL))

    account, entries = engine.account_statement(USD_FIAT)

    assert account.balance == Decimal("6")
    assert [e.idempotency_key for e in entries] == ["dep-1", "wd-1"]
    assert sum((e.amount for e in entries), Decimal(0)) == account.balance
    with pytest.raises(NotFound):
        engine.account_statement(BTC_SPOT)


def test_closing_entry_stream_early_returns_connection(engine: BalanceEngine, database: Database) -> None:
    engine.apply_entry(make_draft("10", key="dep-1"))
    engine.apply_entry(make_draft("5", key="dep-2"))

    with closing(engine.entries_for(USD_FIAT)) as entries:
        assert next(entries).idempotency_key == "dep-1"
        assert database.engine.pool.checkedout() == 1

    assert database.engine.pool.checkedout() == 0
