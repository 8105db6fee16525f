from __future__ import annotations

import argparse
import logging
import sys
from decimal import Decimal, InvalidOperation
from typing import Sequence

from config import config
from db.db import init_db
from domain.accounts import Account, AccountRef, WalletType
from domain.errors import BalanceError
from domain.ledger import EntryDraft, EntryKind, IdempotencyKey
from services.balance_engine import BalanceEngine
from services.reservations import ReservationManager


def _decimal(raw: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a decimal amount: {raw!r}") from None


def _add_account_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("user_id")
    parser.add_argument("currency")
    parser.add_argument("wallet_type", choices=[t.value for t in WalletType])


def _add_amount_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("amount", type=_decimal)
    parser.add_argument("--key", required=True, help="idempotency key")
    parser.add_argument("--reference")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Operate the wallet ledger database.")
    parser.add_argument("--database-url", help="overrides WALLET_LEDGER_DATABASE_URL")
    commands = parser.add_subparsers(dest="command", required=True)

    _add_account_args(commands.add_parser("open", help="provision an account"))
    _add_account_args(commands.add_parser("show", help="print an account"))
    _add_account_args(commands.add_parser("statement", help="print an account's ledger entries"))

    apply = commands.add_parser("apply", help="apply a signed entry to an account")
    _add_account_args(apply)
    _add_amount_args(apply)
    apply.add_argument("--kind", choices=[k.value for k in EntryKind], default=EntryKind.DEPOSIT.value)
    apply.add_argument("--reservation", action="store_true", help="move in_order instead of balance")

    transfer = commands.add_parser("transfer", help="move funds between two accounts of one user")
    transfer.add_argument("user_id")
    transfer.add_argument("currency")
    transfer.add_argument("from_type", choices=[t.value for t in WalletType])
    transfer.add_argument("to_type", choices=[t.value for t in WalletType])
    _add_amount_args(transfer)
    transfer.add_argument("--to-user", help="destination user, defaults to the source user")

    for name in ("reserve", "release", "settle"):
        sub = commands.add_parser(name, help=f"{name} funds of an account")
        _add_account_args(sub)
        _add_amount_args(sub)
        sub.add_argument("--kind", choices=[k.value for k in EntryKind], default=EntryKind.TRADE.value)

    return parser


def render_account(account: Account) -> str:
    state = "active" if account.is_active else ("frozen" if not account.status else account.state.value.lower())
    return (
        f"{account.ref}  balance={account.balance}  in_order={account.in_order}  "
        f"total={account.total}  ({state})"
    )


def run(args: argparse.Namespace, engine: BalanceEngine) -> None:
    if args.command == "transfer":
        source = AccountRef.of(args.user_id, args.currency, args.from_type)
        destination = AccountRef.of(args.to_user or args.user_id, args.currency, args.to_type)
        accounts = engine.apply_transfer(
            EntryDraft(
                account=source,
                amount=-args.amount,
                kind=EntryKind.TRANSFER_OUT,
                idempotency_key=IdempotencyKey(f"{args.key}:out"),
                reference=args.reference,
            ),
            EntryDraft(
                account=destination,
                amount=args.amount,
                kind=EntryKind.TRANSFER_IN,
                idempotency_key=IdempotencyKey(f"{args.key}:in"),
                reference=args.reference,
            ),
        )
        for account in accounts:
            print(render_account(account))
        return

    ref = AccountRef.of(args.user_id, args.currency, args.wallet_type)
    if args.command == "open":
        print(render_account(engine.open_account(args.user_id, args.currency, args.wallet_type)))
    elif args.command == "show":
        print(render_account(engine.get_account(ref)))
    elif args.command == "statement":
        account, entries = engine.account_statement(ref)
        print(render_account(account))
        for entry in entries:
            target = "in_order" if entry.reservation else "balance"
            print(
                f"  #{entry.sequence:<6} {entry.created_at.isoformat()}  {entry.kind.value:<12} "
                f"{entry.amount:>14} -> {target:<8} key={entry.idempotency_key}"
                + (f" ref={entry.reference}" if entry.reference else "")
            )
    elif args.command == "apply":
        draft = EntryDraft(
            account=ref,
            amount=args.amount,
            kind=EntryKind(args.kind),
            idempotency_key=IdempotencyKey(args.key),
            reservation=args.reservation,
            reference=args.reference,
        )
        print(render_account(engine.apply_entry(draft)))
    else:
        reservations = ReservationManager(engine)
        operation = getattr(reservations, args.command)
        account = operation(
            ref, args.amount, idempotency_key=args.key, kind=EntryKind(args.kind), reference=args.reference
        )
        print(render_account(account))


def main(argv: Sequence[str] | None = None) -> int:
    settings = config()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    args = build_parser().parse_args(argv)

    database = init_db(settings, url=args.database_url)
    engine = BalanceEngine(database, lock_timeout=settings.lock_timeout_seconds)
    try:
        run(args, engine)
    except BalanceError as err:
        print(f"error: {err}", file=sys.stderr)
        return 1
    finally:
        database.dispose()
    return 0


if __name__ == "__main__":
    sys.exit(main())
