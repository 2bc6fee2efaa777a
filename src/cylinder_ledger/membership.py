"""Member accounts: deposits, debt, payments, and the exit/refund process.

Exit flow::

    Active --request_exit--> Pending Exit --(14 days)--> eligible
    Pending Exit --process_refund--> Non Active

Eligibility is never stored. :func:`refund_status` recomputes it from the
exit request date and the current time on every read. A refund pays out half
of the deposit; the other half is forfeited.

Balances never go negative: payments floor debt at zero and refunds zero the
deposit. Member rows are written before the ledger entry that records the
change.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

from . import core_logic, data_manager, ledger, log
from .constants import (
    COOLING_PERIOD_DAYS,
    DEPOSIT_SCHEDULE,
    REFUND_SHARE,
    CylinderSize,
    Entity,
    MemberStatus,
    PaymentStatus,
    TransactionType,
)
from .core_logic import BusinessRuleViolation, RuntimeContext


EDITABLE_MEMBER_FIELDS = frozenset({"name", "company_name", "address", "phone"})


@dataclass(frozen=True)
class RefundStatus:
    """Derived refund eligibility for a member with a pending exit."""

    eligible: bool
    days_left: int
    eligible_on: datetime


def compute_initial_deposit(items: Mapping[Union[str, CylinderSize], int]) -> Decimal:
    """Total onboarding deposit for ``items`` (cylinder size -> count).

    Raises:
        BusinessRuleViolation: If a size is not part of the deposit schedule.
        ValueError: If a count is negative.
    """

    total = Decimal("0")
    for size, count in items.items():
        cylinder_size = core_logic.require_size(size)
        if count < 0:
            raise ValueError(f"Deposit item count must not be negative: {size}={count}")
        total += DEPOSIT_SCHEDULE[cylinder_size] * count
    return total


def cylinders_held_by(context: RuntimeContext, member_id: str) -> List[data_manager.CylinderRow]:
    return [cylinder for cylinder in core_logic.list_cylinders(context) if cylinder.current_holder == member_id]


def onboard_member(
    context: RuntimeContext,
    name: str,
    company_name: str,
    *,
    address: str = "",
    phone: str = "",
    deposit_items: Optional[Mapping[Union[str, CylinderSize], int]] = None,
    carried_deposit: Optional[Decimal] = None,
    when: Optional[datetime] = None,
) -> data_manager.MemberRow:
    """Create an Active member with an opening deposit.

    New members pay the schedule deposit for ``deposit_items``. Returning
    members pass ``carried_deposit`` instead (zero opts out entirely).

    Raises:
        BusinessRuleViolation: If both deposit sources are given or the
            company name is empty.
        ValueError: If the carried deposit is negative.
    """

    if deposit_items is not None and carried_deposit is not None:
        raise BusinessRuleViolation("Use either a deposit schedule or a carried deposit, not both")
    if not company_name.strip():
        raise BusinessRuleViolation("Company name is required")

    if carried_deposit is not None:
        core_logic.require_nonnegative_money(carried_deposit)
        deposit = carried_deposit
    else:
        deposit = compute_initial_deposit(deposit_items or {})

    timestamp = core_logic.resolve_timestamp(when)
    member = data_manager.MemberRow(
        member_id=core_logic.generate_record_id("MEM", when=timestamp),
        name=name.strip(),
        company_name=company_name.strip(),
        address=address,
        phone=phone,
        total_deposit=deposit,
        total_debt=Decimal("0"),
        status=MemberStatus.ACTIVE.value,
        join_date_iso=timestamp.isoformat(),
        exit_request_date_iso=None,
    )
    core_logic.insert_records(context, Entity.MEMBERS, member)
    log.info("Onboarded member '%s' (%s) with deposit %s", member.member_id, member.company_name, deposit)
    return member


def update_member_details(context: RuntimeContext, member_id: str, /, **changes: Any) -> data_manager.MemberRow:
    """Edit contact details. Balances and status only change through their own operations."""

    core_logic.get_member(context, member_id)
    unknown = set(changes) - EDITABLE_MEMBER_FIELDS
    if unknown:
        raise BusinessRuleViolation(f"Fields not editable: {', '.join(sorted(unknown))}")
    if "company_name" in changes and not str(changes["company_name"]).strip():
        raise BusinessRuleViolation("Company name is required")
    core_logic.update_records(context, Entity.MEMBERS, member_id, changes)
    log.info("Updated member '%s': %s", member_id, ", ".join(sorted(changes)))
    return core_logic.get_member(context, member_id)


def delete_member(context: RuntimeContext, member_id: str) -> None:
    """Delete a member that has no cylinders and no ledger history.

    Raises:
        BusinessRuleViolation: If the member holds cylinders or is referenced
            by any ledger entry.
    """

    member = core_logic.get_member(context, member_id)
    if cylinders_held_by(context, member_id):
        log.warning("Refusing to delete member '%s' holding cylinders", member_id)
        raise BusinessRuleViolation(f"Member {member.company_name} still holds cylinders")
    if any(entry.member_id == member_id for entry in core_logic.list_transactions(context)):
        log.warning("Refusing to delete member '%s' referenced by the ledger", member_id)
        raise BusinessRuleViolation(f"Member {member.company_name} has ledger history")
    core_logic.delete_records(context, Entity.MEMBERS, member_id)
    log.info("Deleted member '%s'", member_id)


def add_debt(context: RuntimeContext, member_id: str, amount: Decimal) -> data_manager.MemberRow:
    """Increase a member's debt by ``amount`` (> 0)."""

    core_logic.require_positive_money(amount)
    member = core_logic.get_member(context, member_id)
    new_debt = member.total_debt + amount
    core_logic.update_records(context, Entity.MEMBERS, member_id, {"total_debt": new_debt})
    log.info("Member '%s' debt %s -> %s", member_id, member.total_debt, new_debt)
    return core_logic.get_member(context, member_id)


def settlement_amount(bills: Iterable[data_manager.TransactionRow]) -> Decimal:
    """Sum of the costs of ``bills``; what a payment settling them must equal."""

    return sum((bill.cost or Decimal("0") for bill in bills), Decimal("0"))


def pay_debt(
    context: RuntimeContext,
    member_id: str,
    amount: Decimal,
    bill_ids: Sequence[str],
    *,
    when: Optional[datetime] = None,
) -> data_manager.TransactionRow:
    """Record a debt payment that settles the selected bills.

    Callers pass ``amount == settlement_amount(selected bills)``; the amount
    is not recomputed here. Debt decreases by ``amount`` floored at zero, the
    bills flip to PAID, and a DEBT_PAYMENT entry referencing them is
    appended.

    Raises:
        ValueError: If ``amount`` is not positive.
        MissingReferenceError: If the member or a bill is unknown.
        BusinessRuleViolation: If a bill is repeated, is not a rental-out of
            this member, or is already paid.
    """

    core_logic.require_positive_money(amount)
    member = core_logic.get_member(context, member_id)
    if bill_ids:
        core_logic.require_unique_ids(bill_ids, label="bill")
    for bill_id in bill_ids:
        bill = core_logic.get_transaction(context, bill_id)
        if (
            bill.transaction_type != TransactionType.RENTAL_OUT.value
            or bill.member_id != member_id
            or bill.payment_status != PaymentStatus.UNPAID.value
        ):
            log.warning("Bill '%s' is not an unpaid rental of member '%s'", bill_id, member_id)
            raise BusinessRuleViolation(f"Transaction {bill_id} is not an unpaid bill of this member")

    timestamp = core_logic.resolve_timestamp(when)
    new_debt = max(Decimal("0"), member.total_debt - amount)

    core_logic.update_records(context, Entity.MEMBERS, member_id, {"total_debt": new_debt})
    if bill_ids:
        core_logic.update_records(
            context,
            Entity.TRANSACTIONS,
            {"transaction_id": list(bill_ids)},
            {"payment_status": PaymentStatus.PAID.value},
        )
    entry = ledger.build_entry(
        TransactionType.DEBT_PAYMENT,
        timestamp=timestamp,
        member_id=member_id,
        cost=amount,
        payment_status=PaymentStatus.PAID,
        related_transaction_ids=bill_ids,
    )
    ledger.append_entries(context, [entry])
    log.info(
        "Member '%s' paid %s settling %d bills; debt %s -> %s",
        member_id,
        amount,
        len(bill_ids),
        member.total_debt,
        new_debt,
    )
    return entry


def request_exit(context: RuntimeContext, member_id: str, *, when: Optional[datetime] = None) -> data_manager.MemberRow:
    """Move an Active member to Pending Exit and start the cooling period.

    Raises:
        BusinessRuleViolation: If the member is not Active, still holds any
            cylinder, or has outstanding debt.
    """

    member = core_logic.get_member(context, member_id)
    if member.status != MemberStatus.ACTIVE.value:
        log.warning("Exit request for member '%s' in status %s", member_id, member.status)
        raise BusinessRuleViolation(f"Member {member.company_name} is {member.status}, not Active")
    held = cylinders_held_by(context, member_id)
    if held:
        log.warning("Exit request for member '%s' rejected: holds %d cylinders", member_id, len(held))
        raise BusinessRuleViolation(
            f"Member {member.company_name} still holds {len(held)} cylinder(s)"
        )
    if member.total_debt > 0:
        log.warning("Exit request for member '%s' rejected: debt %s", member_id, member.total_debt)
        raise BusinessRuleViolation(f"Member {member.company_name} has outstanding debt {member.total_debt}")

    timestamp = core_logic.resolve_timestamp(when)
    core_logic.update_records(
        context,
        Entity.MEMBERS,
        member_id,
        {"status": MemberStatus.PENDING_EXIT.value, "exit_request_date_iso": timestamp.isoformat()},
    )
    log.info("Member '%s' requested exit on %s", member_id, timestamp.isoformat())
    return core_logic.get_member(context, member_id)


def refund_status(member: data_manager.MemberRow, now: datetime) -> RefundStatus:
    """Compute refund eligibility from the exit request date and ``now``.

    ``eligible`` is ``now >= request + 14 days``; ``days_left`` counts whole
    days remaining, rounded up, and never goes below zero.

    Raises:
        BusinessRuleViolation: If the member has no exit request on record.
    """

    if member.exit_request_date_iso is None:
        raise BusinessRuleViolation(f"Member {member.company_name} has not requested exit")
    eligible_on = core_logic.parse_timestamp(member.exit_request_date_iso) + timedelta(days=COOLING_PERIOD_DAYS)
    remaining = eligible_on - core_logic.resolve_timestamp(now)
    days_left = max(0, math.ceil(remaining / timedelta(days=1)))
    return RefundStatus(
        eligible=core_logic.resolve_timestamp(now) >= eligible_on,
        days_left=days_left,
        eligible_on=eligible_on,
    )


def refund_amount(member: data_manager.MemberRow) -> Decimal:
    return member.total_deposit * REFUND_SHARE


def process_refund(context: RuntimeContext, member_id: str, *, when: Optional[datetime] = None) -> data_manager.TransactionRow:
    """Pay out half the deposit and close the account.

    Raises:
        BusinessRuleViolation: If the member is not Pending Exit or the
            cooling period has not elapsed.
    """

    member = core_logic.get_member(context, member_id)
    if member.status != MemberStatus.PENDING_EXIT.value:
        log.warning("Refund for member '%s' in status %s rejected", member_id, member.status)
        raise BusinessRuleViolation(f"Member {member.company_name} has no pending exit")
    timestamp = core_logic.resolve_timestamp(when)
    status = refund_status(member, timestamp)
    if not status.eligible:
        log.warning("Refund for member '%s' rejected: %d days left", member_id, status.days_left)
        raise BusinessRuleViolation(
            f"Refund not yet eligible for {member.company_name}: {status.days_left} day(s) left"
        )

    amount = refund_amount(member)
    if amount == 0:
        log.info("Member '%s' closes with no deposit to refund", member_id)

    core_logic.update_records(
        context,
        Entity.MEMBERS,
        member_id,
        {"total_deposit": Decimal("0"), "status": MemberStatus.NON_ACTIVE.value},
    )
    entry = ledger.build_entry(
        TransactionType.DEPOSIT_REFUND,
        timestamp=timestamp,
        member_id=member_id,
        cost=amount,
        payment_status=PaymentStatus.PAID,
    )
    ledger.append_entries(context, [entry])
    log.info("Refunded %s to member '%s' (deposit was %s)", amount, member_id, member.total_deposit)
    return entry
