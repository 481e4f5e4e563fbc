"""
TRASHURE Ledger: Voucher Redemption

The catalog is static configuration. Redeeming spends coins through the
same atomic `apply_delta` used for crediting, with `min_coins=cost` so the
balance is checked at the decrement instant and not against a value the
client cached earlier.
"""

from __future__ import annotations

import logging
from typing import List, Sequence

from engine.account_store import AccountStore
from engine.errors import InsufficientFundsError, UnknownVoucherError
from engine.models import AccountDelta, RedemptionResult, Voucher

logger = logging.getLogger("trashure.vouchers")

VOUCHERS: Sequence[Voucher] = (
    Voucher("v1", "5% Off Coffee",  50,   "amber"),
    Voucher("v2", "Free Eco-Bag",   150,  "green"),
    Voucher("v3", "Cinema Ticket",  500,  "purple"),
    Voucher("v4", "10% Grocery",    1000, "blue"),
)


class VoucherRedemption:

    def __init__(self, accounts: AccountStore, catalog: Sequence[Voucher] = VOUCHERS):
        self.accounts = accounts
        self._catalog = tuple(catalog)

    def catalog(self) -> List[Voucher]:
        return list(self._catalog)

    def get_voucher(self, voucher_id: str) -> Voucher:
        for voucher in self._catalog:
            if voucher.id == voucher_id:
                return voucher
        raise UnknownVoucherError(voucher_id)

    def redeem(self, user_id: str, voucher_id: str) -> RedemptionResult:
        voucher = self.get_voucher(voucher_id)
        try:
            account = self.accounts.apply_delta(
                user_id,
                AccountDelta(coins_delta=-voucher.cost),
                min_coins=voucher.cost,
            )
        except InsufficientFundsError as e:
            logger.info(
                f"[REDEEM] {user_id}: '{voucher.title}' rejected, balance {e.balance} < {e.required}"
            )
            raise
        logger.info(f"[REDEEM] {user_id}: '{voucher.title}' for {voucher.cost} coins -> balance {account.coins}")
        return RedemptionResult(ok=True, new_balance=account.coins, voucher=voucher)
