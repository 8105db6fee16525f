from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import NewType
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import ValidationError

UserId = NewType("UserId", str)
AccountId = NewType("AccountId", UUID)

MAX_CURRENCY_LENGTH = 255


class WalletType(StrEnum):
    FIAT = "FIAT"
    SPOT = "SPOT"
    ECO = "ECO"
    FUTURES = "FUTURES"


class AccountState(StrEnum):
    ACTIVE = "ACTIVE"
    RETIRED = "RETIRED"


class AccountRef(BaseModel):
    """Natural key of an account: one wallet per user, currency and wallet type."""

    model_config = ConfigDict(frozen=True)

    user_id: UserId
    currency: str
    wallet_type: WalletType

    @classmethod
    def of(cls, user_id: str, currency: str, wallet_type: WalletType | str) -> AccountRef:
        """Build a reference from raw caller input, raising ValidationError on bad values."""
        if not user_id:
            raise ValidationError("user_id must be non-empty")
        if not currency or not currency.strip():
            raise ValidationError("currency must be non-empty")
        if len(currency) > MAX_CURRENCY_LENGTH:
            raise ValidationError(f"currency must be at most {MAX_CURRENCY_LENGTH} characters")
        try:
            parsed_type = WalletType(wallet_type)
        except ValueError:
            allowed = ", ".join(member.value for member in WalletType)
            raise ValidationError(f"wallet_type must be one of [{allowed}], got {wallet_type!r}") from None
        return cls(user_id=UserId(user_id), currency=currency, wallet_type=parsed_type)

    @property
    def sort_key(self) -> tuple[str, str, str]:
        return (self.user_id, self.currency, self.wallet_type.value)

    def __str__(self) -> str:
        return f"{self.user_id}/{self.currency}/{self.wallet_type.value}"


class WalletAddress(BaseModel):
    """On-chain deposit address of a wallet on one network."""

    address: str
    network: str
    balance: Decimal = Decimal(0)

    @model_validator(mode="after")
    def _validate_fields(self) -> WalletAddress:
        if not self.address:
            raise ValueError("address must be non-empty")
        if not self.network:
            raise ValueError("network must be non-empty")
        if self.balance < 0:
            raise ValueError("balance must be >= 0")
        return self


class Account(BaseModel):
    id: AccountId = AccountId(Field(default_factory=uuid4))
    user_id: UserId
    currency: str
    wallet_type: WalletType
    balance: Decimal = Decimal(0)
    in_order: Decimal = Decimal(0)
    status: bool = True
    state: AccountState = AccountState.ACTIVE
    addresses: dict[str, WalletAddress] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    retired_at: datetime | None = None

    @model_validator(mode="after")
    def _validate_fields(self) -> Account:
        if self.balance < 0 or self.in_order < 0:
            raise ValueError("balance and in_order must be >= 0")
        for network, address in self.addresses.items():
            if address.network != network:
                raise ValueError(f"address keyed by {network!r} declares network {address.network!r}")
        return self

    @property
    def ref(self) -> AccountRef:
        return AccountRef(user_id=self.user_id, currency=self.currency, wallet_type=self.wallet_type)

    @property
    def total(self) -> Decimal:
        return self.balance + self.in_order

    @property
    def is_active(self) -> bool:
        return self.status and self.state == AccountState.ACTIVE
