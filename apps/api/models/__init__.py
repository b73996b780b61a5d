"""Models package."""

from .user import User
from .service import Service
from .booking import Booking
from .booking_authorization import BookingAuthorization
from .user_points import UserPoints
from .point_transaction import PointTransaction
from .funding_record import FundingRecord
from .blockchain_event import BlockchainEvent
from .points_reconciliation import PointsReconciliation
