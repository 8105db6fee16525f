"""Domain models and errors for the wallet ledger.

This package contains in-memory (Pydantic) models describing accounts, ledger
entries and reservations, plus the error hierarchy raised by the services.
They are independent from persistence models so that business logic and
testing can evolve without DB coupling.
"""

__all__ = [
    "accounts",
    "errors",
    "ledger",
]
