"""Resolve marketplace users to their settlement-chain addresses."""

from __future__ import annotations

from web3 import Web3

from models.user import User
from services.errors import WalletNotFound


def wallet_for(user: User) -> str:
    """Checksum address for ``user``; embedded wallets win over smart wallets."""
    address = (user.wallet_address or user.smart_wallet_address or "").strip()
    if not address or not Web3.is_address(address):
        raise WalletNotFound("User has no settlement wallet configured.", user_id=user.id)
    return Web3.to_checksum_address(address)

