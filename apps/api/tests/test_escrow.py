import pytest

from conftest import wallet
from services.errors import (
    AuthorizationExpired,
    AuthorizationReplayed,
    InvalidAuthorization,
    InvalidBookingState,
    InvalidSignature,
)
from services.escrow import COMPLETED, REFUNDED, EscrowContract, compute_distribution
from services.signer import AuthorizationSigner, get_signer


NOW = 1_760_000_000
CUSTOMER = wallet(1)
PROVIDER = wallet(2)
INVITER = wallet(3)
PLATFORM = wallet(4)


@pytest.fixture
def escrow():
    return EscrowContract(signer=get_signer(), platform_wallet=PLATFORM)


def _authorize(booking_id="booking-1", amount=19_800_000, inviter=None, inviter_rate=0, platform_rate=1000, **kwargs):
    return get_signer().sign_booking_authorization(
        booking_id=booking_id,
        customer=CUSTOMER,
        provider=PROVIDER,
        inviter=inviter,
        amount=amount,
        original_amount=20_000_000,
        platform_fee_rate=platform_rate,
        inviter_fee_rate=inviter_rate,
        now=NOW,
        **kwargs,
    )


def test_points_subsidised_booking_pays_provider_full_share(escrow):
    signed = _authorize()
    escrow.pay(signed.authorization, signed.signature, now=NOW)
    distribution = escrow.complete(signed.authorization["bookingId"])

    assert distribution.provider_amount == 18_000_000
    assert distribution.inviter_amount == 0
    assert distribution.platform_amount == 1_800_000
    assert escrow.balances[PROVIDER] == 18_000_000
    assert escrow.balances[PLATFORM] == 1_800_000
    assert escrow.bookings[signed.authorization["bookingId"]].status == COMPLETED
    assert [event.name for event in escrow.events] == ["BookingCreatedAndPaid", "ServiceCompleted"]


def test_inviter_booking_distribution(escrow):
    signed = _authorize(amount=20_000_000, inviter=INVITER, inviter_rate=500, platform_rate=500)
    escrow.pay(signed.authorization, signed.signature, now=NOW)
    distribution = escrow.complete(signed.authorization["bookingId"])
    assert (distribution.provider_amount, distribution.inviter_amount, distribution.platform_amount) == (
        18_000_000,
        1_000_000,
        1_000_000,
    )
    assert escrow.balances[INVITER] == 1_000_000


def test_replayed_nonce_is_rejected(escrow):
    first = _authorize(booking_id="booking-1", nonce=42)
    second = _authorize(booking_id="booking-2", nonce=42)
    escrow.pay(first.authorization, first.signature, now=NOW)
    with pytest.raises(AuthorizationReplayed):
        escrow.pay(second.authorization, second.signature, now=NOW)


def test_expired_authorization_is_rejected(escrow):
    signed = _authorize()
    with pytest.raises(AuthorizationExpired):
        escrow.pay(signed.authorization, signed.signature, now=signed.expiry + 1)
    assert signed.authorization["bookingId"] not in escrow.bookings


def test_foreign_signer_is_rejected(escrow):
    rogue = AuthorizationSigner(private_key="0x" + "99" * 32)
    signed = rogue.sign_booking_authorization(
        booking_id="booking-1",
        customer=CUSTOMER,
        provider=PROVIDER,
        amount=20_000_000,
        original_amount=20_000_000,
        platform_fee_rate=1000,
        inviter_fee_rate=0,
        now=NOW,
    )
    with pytest.raises(InvalidSignature):
        escrow.pay(signed.authorization, signed.signature, now=NOW)


def test_amount_below_provider_share_is_rejected(escrow):
    signed = _authorize(amount=17_000_000)
    with pytest.raises(InvalidAuthorization):
        escrow.pay(signed.authorization, signed.signature, now=NOW)


def test_completion_happens_once(escrow):
    signed = _authorize()
    escrow.pay(signed.authorization, signed.signature, now=NOW)
    escrow.complete(signed.authorization["bookingId"])
    with pytest.raises(InvalidBookingState):
        escrow.complete(signed.authorization["bookingId"])
    assert escrow.balances[PROVIDER] == 18_000_000


def test_cancellation_split_must_match_escrow(escrow):
    signed = _authorize()
    escrow.pay(signed.authorization, signed.signature, now=NOW)
    signer = get_signer()

    bad = signer.sign_cancellation_authorization(
        booking_id="booking-1",
        customer_amount=19_800_000,
        provider_amount=1,
        platform_amount=0,
        now=NOW,
    )
    with pytest.raises(InvalidAuthorization):
        escrow.cancel(bad.authorization, bad.signature, now=NOW)

    good = signer.sign_cancellation_authorization(
        booking_id="booking-1",
        customer_amount=14_850_000,
        provider_amount=4_455_000,
        platform_amount=495_000,
        now=NOW,
    )
    escrow.cancel(good.authorization, good.signature, now=NOW)
    assert escrow.bookings[signed.authorization["bookingId"]].status == REFUNDED
    assert escrow.balances[CUSTOMER] == 14_850_000


def test_compute_distribution_platform_absorbs_points():
    distribution = compute_distribution(19_800_000, 20_000_000, 1000, 0)
    assert distribution.total == 19_800_000
    assert distribution.platform_amount == 1_800_000
