"""
JSON-RPC access to the settlement chain.
Used to confirm that a reported payment transaction actually succeeded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Optional

from web3 import Web3
from web3.exceptions import TransactionNotFound

from config import settings
from services.errors import ChainUnavailable, FatalConfigurationError, PaymentMismatch

logger = logging.getLogger(__name__)


class ChainClient:
    """Thin wrapper around a Web3 HTTP provider."""

    def __init__(self, provider_url: Optional[str] = None):
        self.provider_url = (provider_url or settings.WEB3_PROVIDER_URL or "").strip()
        if not self.provider_url:
            raise FatalConfigurationError("WEB3_PROVIDER_URL is not configured.")
        self.web3 = Web3(
            Web3.HTTPProvider(
                self.provider_url,
                request_kwargs={"timeout": max(int(settings.CHAIN_RPC_TIMEOUT_SECONDS), 1)},
            )
        )

    def get_receipt(self, tx_hash: str) -> Dict[str, Any]:
        """Fetch a receipt, retrying transport failures with backoff."""
        max_retries = max(int(settings.CHAIN_RPC_MAX_RETRIES), 1)
        last_error: Optional[Exception] = None
        for attempt in range(max_retries):
            try:
                return dict(self.web3.eth.get_transaction_receipt(tx_hash))
            except TransactionNotFound as exc:
                raise PaymentMismatch("Payment transaction was not found on-chain.", tx_hash=tx_hash) from exc
            except (ConnectionError, TimeoutError, OSError) as exc:
                last_error = exc
                logger.warning(
                    "RPC receipt lookup failed (attempt %s/%s): %s", attempt + 1, max_retries, exc
                )
                if attempt < max_retries - 1:
                    time.sleep(min(2 ** attempt, 8))
        raise ChainUnavailable("Settlement chain RPC is unavailable.") from last_error

    def transaction_succeeded(self, tx_hash: str) -> bool:
        receipt = self.get_receipt(tx_hash)
        return int(receipt.get("status", 0)) == 1


async def verify_payment_receipt(tx_hash: str) -> None:
    """Raise unless ``tx_hash`` is a successful transaction (no-op when disabled)."""
    if not settings.VERIFY_PAYMENT_RECEIPTS:
        return
    client = ChainClient()
    succeeded = await asyncio.to_thread(client.transaction_succeeded, tx_hash)
    if not succeeded:
        raise PaymentMismatch("Payment transaction reverted on-chain.", tx_hash=tx_hash)
