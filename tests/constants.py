from domain.accounts import AccountRef, UserId, WalletType

LOCK_TIMEOUT_SECONDS = 2.0

USER = UserId("0b8f3c2e-6f1d-4c52-9a57-3f0d5e2f7a10")
OTHER_USER = UserId("5d1e7a44-2b9c-4e0f-8c31-6a2f9b0d4e87")

USD = "USD"
BTC = "BTC"

USD_FIAT = AccountRef(user_id=USER, currency=USD, wallet_type=WalletType.FIAT)
BTC_SPOT = AccountRef(user_id=USER, currency=BTC, wallet_type=WalletType.SPOT)
BTC_FUTURES = AccountRef(user_id=USER, currency=BTC, wallet_type=WalletType.FUTURES)
OTHER_BTC_SPOT = AccountRef(user_id=OTHER_USER, currency=BTC, wallet_type=WalletType.SPOT)
