"""Enumerations and business constants shared across the cylinder ledger.

Centralises the closed vocabularies (gas types, sizes, statuses, ledger entry
types) and the fixed business rules (cooling period, refund share, deposit
schedule) so the data layer, the transaction engine, and the CLI agree on a
single source of truth.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "2.0.0"


class GasType(str, Enum):
    """Enumerate the gases the pool carries."""

    OXYGEN = "Oxygen"
    ACETYLENE = "Acetylene (C2H2)"
    ARGON = "Argon"
    CO2 = "CO2"
    NITROGEN = "Nitrogen"


class CylinderSize(str, Enum):
    """Enumerate the cylinder capacities."""

    SMALL = "1m3"
    MEDIUM = "2m3"
    LARGE = "6m3"


class CylinderStatus(str, Enum):
    """Enumerate the lifecycle states a cylinder can be in."""

    AVAILABLE = "Available"
    RENTED = "Rented"
    EMPTY_REFILL = "Empty (Needs Refill)"
    REFILLING = "Refilling"
    DELIVERY = "Delivery"
    DAMAGED = "Damaged"


class MemberStatus(str, Enum):
    """Enumerate the account lifecycle of a member."""

    ACTIVE = "Active"
    PENDING_EXIT = "Pending Exit"
    NON_ACTIVE = "Non Active"


class TransactionType(str, Enum):
    """Enumerate the canonical entry types recorded in the ledger."""

    RENTAL_OUT = "RENTAL_OUT"
    RETURN = "RETURN"
    REFILL_OUT = "REFILL_OUT"
    REFILL_IN = "REFILL_IN"
    DELIVERY = "DELIVERY"
    DEBT_PAYMENT = "DEBT_PAYMENT"
    DEPOSIT_REFUND = "DEPOSIT_REFUND"


class PaymentStatus(str, Enum):
    """Enumerate settlement states of a rental-out entry."""

    PAID = "PAID"
    UNPAID = "UNPAID"


class Entity(str, Enum):
    """Enumerate the tables reachable through the data access layer."""

    CYLINDERS = "cylinders"
    MEMBERS = "members"
    TRANSACTIONS = "transactions"
    MEMBER_PRICES = "member_prices"
    BASE_PRICES = "base_prices"
    REFILL_STATIONS = "refill_stations"
    REFILL_PRICES = "refill_prices"


# Holder marker for cylinders sitting at an external refill station.
REFILL_STATION_HOLDER = "RefillStation"
DEFAULT_WAREHOUSE_NAME = "Gudang Utama"
IN_TRANSIT_LOCATION = "In Transit"
UNKNOWN_LABEL = "Unknown"

COOLING_PERIOD_DAYS = 14
REFUND_SHARE = Decimal("0.5")
# Smallest rupiah amount a split share is rounded to.
MONEY_QUANTUM = Decimal("1")

LONG_TERM_DAYS = 30
OVERDUE_TIERS: tuple[int, ...] = (90, 180, 365)
LOW_STOCK_THRESHOLD = 2

# Unit deposit charged per cylinder class when onboarding a member.
DEPOSIT_SCHEDULE: dict[CylinderSize, Decimal] = {
    CylinderSize.SMALL: Decimal("500000"),
    CylinderSize.MEDIUM: Decimal("750000"),
    CylinderSize.LARGE: Decimal("1000000"),
}

# Seed values for the shared base price table (IDR).
DEFAULT_BASE_PRICES: dict[GasType, dict[CylinderSize, Decimal]] = {
    GasType.OXYGEN: {
        CylinderSize.SMALL: Decimal("75000"),
        CylinderSize.MEDIUM: Decimal("150000"),
        CylinderSize.LARGE: Decimal("225000"),
    },
    GasType.ACETYLENE: {
        CylinderSize.SMALL: Decimal("150000"),
        CylinderSize.MEDIUM: Decimal("300000"),
        CylinderSize.LARGE: Decimal("450000"),
    },
    GasType.ARGON: {
        CylinderSize.SMALL: Decimal("180000"),
        CylinderSize.MEDIUM: Decimal("375000"),
        CylinderSize.LARGE: Decimal("600000"),
    },
    GasType.CO2: {
        CylinderSize.SMALL: Decimal("120000"),
        CylinderSize.MEDIUM: Decimal("225000"),
        CylinderSize.LARGE: Decimal("330000"),
    },
    GasType.NITROGEN: {
        CylinderSize.SMALL: Decimal("90000"),
        CylinderSize.MEDIUM: Decimal("180000"),
        CylinderSize.LARGE: Decimal("270000"),
    },
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "GasType",
    "CylinderSize",
    "CylinderStatus",
    "MemberStatus",
    "TransactionType",
    "PaymentStatus",
    "Entity",
    "REFILL_STATION_HOLDER",
    "DEFAULT_WAREHOUSE_NAME",
    "IN_TRANSIT_LOCATION",
    "UNKNOWN_LABEL",
    "COOLING_PERIOD_DAYS",
    "REFUND_SHARE",
    "LONG_TERM_DAYS",
    "OVERDUE_TIERS",
    "LOW_STOCK_THRESHOLD",
    "DEPOSIT_SCHEDULE",
    "DEFAULT_BASE_PRICES",
]
