from fastapi import Request

from services.balance_engine import BalanceEngine


def get_engine(request: Request) -> BalanceEngine:
    return request.app.state.engine
