from decimal import Decimal
import os


def _decimal(name: str, default: str) -> Decimal:
    return Decimal(os.environ.get(name, default))


def _float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


def _int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


# Platform cut of every settled fare (0.15 == 15%)
COMMISSION_RATE = _decimal("COMMISSION_RATE", "0.15")

# How long a rider's counter-offer stays open for drivers
NEGOTIATION_WINDOW_MINUTES = _int("NEGOTIATION_WINDOW_MINUTES", 5)

# Scheduled rides become visible to drivers this many minutes ahead
AVAILABLE_RIDE_WINDOW_MINUTES = _int("AVAILABLE_RIDE_WINDOW_MINUTES", 30)

NEARBY_DRIVER_RADIUS_KM = _float("NEARBY_DRIVER_RADIUS_KM", 5.0)
AVAILABLE_RIDE_RADIUS_KM = _float("AVAILABLE_RIDE_RADIUS_KM", 10.0)

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
