"""
EIP-712 authorization signer for the escrow contract.

The backend signs the settlement plan it computed; the contract verifies the
signature and enforces the split without calling back into the backend.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3

from config import settings
from services.errors import InvalidAuthorization, InvalidSignature, SigningUnavailable

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

BOOKING_AUTHORIZATION_TYPE = [
    {"name": "bookingId", "type": "bytes32"},
    {"name": "customer", "type": "address"},
    {"name": "provider", "type": "address"},
    {"name": "inviter", "type": "address"},
    {"name": "amount", "type": "uint256"},
    {"name": "originalAmount", "type": "uint256"},
    {"name": "platformFeeRate", "type": "uint256"},
    {"name": "inviterFeeRate", "type": "uint256"},
    {"name": "expiry", "type": "uint256"},
    {"name": "nonce", "type": "uint256"},
]

CANCELLATION_AUTHORIZATION_TYPE = [
    {"name": "bookingId", "type": "bytes32"},
    {"name": "customerAmount", "type": "uint256"},
    {"name": "providerAmount", "type": "uint256"},
    {"name": "platformAmount", "type": "uint256"},
    {"name": "inviterAmount", "type": "uint256"},
    {"name": "reason", "type": "string"},
    {"name": "expiry", "type": "uint256"},
    {"name": "nonce", "type": "uint256"},
]

AUTHORIZATION_TYPES = {
    "BookingAuthorization": BOOKING_AUTHORIZATION_TYPE,
    "CancellationAuthorization": CANCELLATION_AUTHORIZATION_TYPE,
}


@dataclass(frozen=True)
class SignedAuthorization:
    primary_type: str
    authorization: Dict[str, Any]
    signature: str
    expiry: int
    nonce: int

    def as_dict(self) -> Dict[str, Any]:
        """JSON-friendly payload for the client submitting the transaction."""
        message: Dict[str, Any] = {}
        for key, value in self.authorization.items():
            if isinstance(value, bytes):
                message[key] = "0x" + value.hex()
            elif isinstance(value, int):
                # uint256 values exceed JavaScript's safe integer range.
                message[key] = str(value)
            else:
                message[key] = value
        return {
            "type": self.primary_type,
            "authorization": message,
            "signature": self.signature,
            "expiry": self.expiry,
            "nonce": str(self.nonce),
        }


def booking_id_to_bytes32(booking_id: str) -> bytes:
    """Contract-side booking key: keccak256 of the UTF-8 booking id."""
    return bytes(Web3.keccak(text=str(booking_id)))


def generate_nonce() -> int:
    """128-bit CSPRNG nonce; uniqueness is also enforced by the nonce column."""
    return secrets.randbits(128)


def normalize_address(address: Optional[str], field: str = "address") -> str:
    if not address:
        return ZERO_ADDRESS
    if not Web3.is_address(address):
        raise InvalidAuthorization(f"{field} is not a valid address.", field=field)
    return Web3.to_checksum_address(address)


class AuthorizationSigner:
    """Signs BookingAuthorization and CancellationAuthorization payloads."""

    def __init__(
        self,
        private_key: Optional[str] = None,
        contract_address: Optional[str] = None,
        chain_id: Optional[int] = None,
    ) -> None:
        key = (private_key if private_key is not None else settings.BACKEND_SIGNER_PRIVATE_KEY or "").strip()
        contract = (contract_address if contract_address is not None else settings.CONTRACT_ADDRESS or "").strip()
        if not key:
            raise SigningUnavailable("Authorization signer is not configured.")
        if not contract or not Web3.is_address(contract):
            raise SigningUnavailable("Escrow contract address is not configured.")
        try:
            self._account = Account.from_key(key)
        except Exception as exc:
            # Never echo the key material.
            raise SigningUnavailable("Authorization signer key is invalid.") from exc

        self.domain = {
            "name": settings.EIP712_DOMAIN_NAME,
            "version": settings.EIP712_DOMAIN_VERSION,
            "chainId": int(chain_id if chain_id is not None else settings.CONTRACT_CHAIN_ID),
            "verifyingContract": Web3.to_checksum_address(contract),
        }

    @property
    def signer_address(self) -> str:
        return self._account.address

    def _typed_data(self, primary_type: str, message: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "types": {
                "EIP712Domain": EIP712_DOMAIN_TYPE,
                primary_type: AUTHORIZATION_TYPES[primary_type],
            },
            "primaryType": primary_type,
            "domain": dict(self.domain),
            "message": message,
        }

    def _sign(self, primary_type: str, message: Dict[str, Any], expiry: int, nonce: int) -> SignedAuthorization:
        try:
            signable = encode_typed_data(full_message=self._typed_data(primary_type, message))
            signed = self._account.sign_message(signable)
        except Exception as exc:
            logger.error("EIP-712 signing failed for %s: %s", primary_type, type(exc).__name__)
            raise SigningUnavailable("Authorization could not be signed.") from exc
        return SignedAuthorization(
            primary_type=primary_type,
            authorization=message,
            signature="0x" + bytes(signed.signature).hex(),
            expiry=expiry,
            nonce=nonce,
        )

    def sign_booking_authorization(
        self,
        booking_id: str,
        customer: str,
        provider: str,
        amount: int,
        original_amount: int,
        platform_fee_rate: int,
        inviter_fee_rate: int,
        inviter: Optional[str] = None,
        expiry_minutes: Optional[int] = None,
        now: Optional[int] = None,
        nonce: Optional[int] = None,
    ) -> SignedAuthorization:
        """Sign the payment authorization for one booking-payment attempt.

        ``amount`` is what the customer moves on-chain; ``original_amount`` is
        the full price the contract uses for the provider and inviter shares.
        Both are integer token base units.
        """
        if amount < 0 or original_amount < 0:
            raise InvalidAuthorization("Authorization amounts must not be negative.")
        if original_amount < amount:
            raise InvalidAuthorization(
                "originalAmount must be greater than or equal to amount.",
                amount=amount,
                original_amount=original_amount,
            )
        if platform_fee_rate < 0 or inviter_fee_rate < 0 or platform_fee_rate + inviter_fee_rate > 10000:
            raise InvalidAuthorization("Fee rates must sum to at most 10000 basis points.")

        issued_at = int(now if now is not None else time.time())
        window = int(expiry_minutes if expiry_minutes is not None else settings.AUTHORIZATION_EXPIRY_MINUTES)
        expiry = issued_at + max(window, 1) * 60
        nonce_value = generate_nonce() if nonce is None else int(nonce)

        message = {
            "bookingId": booking_id_to_bytes32(booking_id),
            "customer": normalize_address(customer, "customer"),
            "provider": normalize_address(provider, "provider"),
            "inviter": normalize_address(inviter, "inviter"),
            "amount": int(amount),
            "originalAmount": int(original_amount),
            "platformFeeRate": int(platform_fee_rate),
            "inviterFeeRate": int(inviter_fee_rate),
            "expiry": expiry,
            "nonce": nonce_value,
        }
        if message["customer"] == ZERO_ADDRESS or message["provider"] == ZERO_ADDRESS:
            raise InvalidAuthorization("Customer and provider addresses are required.")

        signed = self._sign("BookingAuthorization", message, expiry, nonce_value)
        logger.info("Signed booking authorization booking=%s amount=%s expiry=%s", booking_id, amount, expiry)
        return signed

    def sign_cancellation_authorization(
        self,
        booking_id: str,
        customer_amount: int,
        provider_amount: int,
        platform_amount: int,
        inviter_amount: int = 0,
        reason: str = "Booking cancelled",
        expiry_minutes: Optional[int] = None,
        now: Optional[int] = None,
        nonce: Optional[int] = None,
    ) -> SignedAuthorization:
        """Sign the split of an escrowed payment for a cancelled booking."""
        amounts = (customer_amount, provider_amount, platform_amount, inviter_amount)
        if any(value < 0 for value in amounts):
            raise InvalidAuthorization("Cancellation amounts must not be negative.")

        issued_at = int(now if now is not None else time.time())
        window = int(expiry_minutes if expiry_minutes is not None else settings.AUTHORIZATION_EXPIRY_MINUTES)
        expiry = issued_at + max(window, 1) * 60
        nonce_value = generate_nonce() if nonce is None else int(nonce)

        message = {
            "bookingId": booking_id_to_bytes32(booking_id),
            "customerAmount": int(customer_amount),
            "providerAmount": int(provider_amount),
            "platformAmount": int(platform_amount),
            "inviterAmount": int(inviter_amount),
            "reason": reason,
            "expiry": expiry,
            "nonce": nonce_value,
        }
        signed = self._sign("CancellationAuthorization", message, expiry, nonce_value)
        logger.info("Signed cancellation authorization booking=%s refund=%s", booking_id, customer_amount)
        return signed

    def recover(self, primary_type: str, message: Dict[str, Any], signature: str) -> str:
        """Recover the address that signed ``message``."""
        if primary_type not in AUTHORIZATION_TYPES:
            raise InvalidAuthorization("Unknown authorization type.", type=primary_type)
        try:
            signable = encode_typed_data(full_message=self._typed_data(primary_type, message))
            return Account.recover_message(signable, signature=signature)
        except Exception as exc:
            raise InvalidSignature("Authorization signature is malformed.") from exc

    def verify(self, primary_type: str, message: Dict[str, Any], signature: str) -> bool:
        return self.recover(primary_type, message, signature) == self.signer_address


def get_signer() -> AuthorizationSigner:
    """Signer built from current settings; raises ``SigningUnavailable`` when unconfigured."""
    return AuthorizationSigner()
