"""Routers package."""

from . import (
    health,
    bookings,
    points,
    funding,
    chain_events,
)
