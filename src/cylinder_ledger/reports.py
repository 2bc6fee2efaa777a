"""Read-only views derived from the catalog, members, and ledger.

Nothing here writes. Thresholds default to the ``[Reports]`` section of
``config.ini`` carried on the runtime context.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Tuple

from . import core_logic, data_manager, ledger, log, membership
from .constants import (
    UNKNOWN_LABEL,
    CylinderStatus,
    GasType,
    MemberStatus,
    TransactionType,
)
from .core_logic import RuntimeContext


@dataclass(frozen=True)
class Holding:
    """A rented cylinder with how long its current holder has had it."""

    cylinder: data_manager.CylinderRow
    member_id: str
    company_name: str
    rented_on: Optional[datetime]
    days: int
    is_long_term: bool
    tier: Optional[int]


@dataclass(frozen=True)
class InventorySummary:
    total: int
    by_status: Dict[str, int]
    by_gas: Dict[str, Tuple[int, int]]
    utilization_pct: int


@dataclass(frozen=True)
class FinancialSummary:
    income: Decimal
    expenses: Decimal
    net: Decimal


def low_stock_gases(context: RuntimeContext, threshold: Optional[int] = None) -> List[GasType]:
    """Gas types with fewer than ``threshold`` Available cylinders."""

    limit = context.settings.low_stock_threshold if threshold is None else threshold
    available: Dict[str, int] = {gas.value: 0 for gas in GasType}
    for cylinder in core_logic.list_cylinders(context):
        if cylinder.status == CylinderStatus.AVAILABLE.value and cylinder.gas_type in available:
            available[cylinder.gas_type] += 1
    low = [gas for gas in GasType if available[gas.value] < limit]
    if low:
        log.warning("Low stock for: %s", ", ".join(gas.value for gas in low))
    return low


def members_ready_for_refund(context: RuntimeContext, now: Optional[datetime] = None) -> List[data_manager.MemberRow]:
    moment = core_logic.resolve_timestamp(now)
    return [
        member
        for member in core_logic.list_members(context)
        if member.status == MemberStatus.PENDING_EXIT.value
        and member.exit_request_date_iso is not None
        and membership.refund_status(member, moment).eligible
    ]


def current_holdings(
    context: RuntimeContext,
    now: Optional[datetime] = None,
    *,
    member_id: Optional[str] = None,
) -> List[Holding]:
    """Every Rented cylinder with its held duration, longest first.

    Cylinders with no rental-out on record (set to Rented by an admin edit)
    report zero days and no rental date.
    """

    moment = core_logic.resolve_timestamp(now)
    transactions = core_logic.list_transactions(context)
    members = {member.member_id: member for member in core_logic.list_members(context)}
    tiers = context.settings.overdue_tiers

    holdings: List[Holding] = []
    for cylinder in core_logic.list_cylinders(context):
        if cylinder.status != CylinderStatus.RENTED.value or cylinder.current_holder is None:
            continue
        if member_id is not None and cylinder.current_holder != member_id:
            continue
        entry = ledger.latest_rental_out(transactions, cylinder.cylinder_id, cylinder.current_holder)
        days = ledger.held_duration_days(transactions, cylinder.cylinder_id, cylinder.current_holder, moment) or 0
        member = members.get(cylinder.current_holder)
        holdings.append(
            Holding(
                cylinder=cylinder,
                member_id=cylinder.current_holder,
                company_name=member.company_name if member else UNKNOWN_LABEL,
                rented_on=core_logic.parse_timestamp(entry.timestamp_iso) if entry else None,
                days=days,
                is_long_term=ledger.is_long_term(days, context.settings.long_term_days),
                tier=ledger.overdue_tier(days, tiers),
            )
        )
    holdings.sort(key=lambda holding: holding.days, reverse=True)
    return holdings


def overdue_holdings(
    context: RuntimeContext,
    now: Optional[datetime] = None,
    min_days: Optional[int] = None,
) -> List[Holding]:
    """Holdings strictly longer than ``min_days`` (default: the lowest overdue tier)."""

    threshold = min(context.settings.overdue_tiers) if min_days is None else min_days
    return [holding for holding in current_holdings(context, now) if holding.days > threshold]


def inventory_summary(context: RuntimeContext) -> InventorySummary:
    """Counts per status and per gas, plus the share of the fleet out on rent."""

    cylinders = core_logic.list_cylinders(context)
    by_status = {status.value: 0 for status in CylinderStatus}
    by_gas: Dict[str, Tuple[int, int]] = {gas.value: (0, 0) for gas in GasType}
    for cylinder in cylinders:
        by_status[cylinder.status] = by_status.get(cylinder.status, 0) + 1
        total, available = by_gas.get(cylinder.gas_type, (0, 0))
        is_available = cylinder.status == CylinderStatus.AVAILABLE.value
        by_gas[cylinder.gas_type] = (total + 1, available + int(is_available))

    utilization = 0
    if cylinders:
        ratio = Decimal(by_status[CylinderStatus.RENTED.value] * 100) / len(cylinders)
        utilization = int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return InventorySummary(
        total=len(cylinders),
        by_status=by_status,
        by_gas=by_gas,
        utilization_pct=utilization,
    )


def _positive_costs(context: RuntimeContext, transaction_type: TransactionType) -> List[data_manager.TransactionRow]:
    return [
        entry
        for entry in core_logic.list_transactions(context)
        if entry.transaction_type == transaction_type.value and (entry.cost or 0) > 0
    ]


def financial_summary(context: RuntimeContext) -> FinancialSummary:
    """Income from rental-outs, expenses from refill receipts, and the difference."""

    income = sum((entry.cost for entry in _positive_costs(context, TransactionType.RENTAL_OUT)), Decimal("0"))
    expenses = sum((entry.cost for entry in _positive_costs(context, TransactionType.REFILL_IN)), Decimal("0"))
    return FinancialSummary(income=income, expenses=expenses, net=income - expenses)


def monthly_financials(context: RuntimeContext) -> List[Tuple[str, Decimal, Decimal]]:
    """``(YYYY-MM, income, expenses)`` per calendar month, oldest first."""

    months: Dict[str, List[Decimal]] = {}
    for transaction_type, slot in ((TransactionType.RENTAL_OUT, 0), (TransactionType.REFILL_IN, 1)):
        for entry in _positive_costs(context, transaction_type):
            key = core_logic.parse_timestamp(entry.timestamp_iso).strftime("%Y-%m")
            months.setdefault(key, [Decimal("0"), Decimal("0")])[slot] += entry.cost
    return [(key, values[0], values[1]) for key, values in sorted(months.items())]


def revenue_by_member(context: RuntimeContext, limit: Optional[int] = 5) -> List[Tuple[str, Decimal]]:
    """Top members by rental income as ``(company name, total)``, largest first."""

    members = {member.member_id: member for member in core_logic.list_members(context)}
    totals: Dict[str, Decimal] = {}
    for entry in _positive_costs(context, TransactionType.RENTAL_OUT):
        if entry.member_id:
            totals[entry.member_id] = totals.get(entry.member_id, Decimal("0")) + entry.cost
    ranked = sorted(
        (
            (members[member_id].company_name if member_id in members else UNKNOWN_LABEL, total)
            for member_id, total in totals.items()
        ),
        key=lambda item: item[1],
        reverse=True,
    )
    return ranked if limit is None else ranked[:limit]
