# Models
from .product import Product
from .reservations import Reservation, ReleaseReason
from .reservation_logs import ReservationLog, ChangeType

__all__ = [
    "Product",
    "Reservation",
    "ReleaseReason",
    "ReservationLog",
    "ChangeType",
]
