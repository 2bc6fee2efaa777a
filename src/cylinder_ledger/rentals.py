"""Rental transaction compiler.

One counter action may rent several cylinders to a member and take several
back at once. :func:`compile_and_apply` expands that action into:

1. a debt increase for the whole amount when the rental is on credit,
2. the Available -> Rented batch plus one RENTAL_OUT entry per cylinder,
   each costing an even share of the total (rounded to whole rupiah,
   the last entry absorbs the remainder),
3. the Rented -> EmptyRefill batch plus one RETURN entry per cylinder
   carrying the held duration,
4. a single ledger append for every new entry.

Everything is validated before the first write. The store is not
transactional, so a failure after step 1 leaves earlier writes in place;
state is always written before the ledger entries that explain it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from . import core_logic, data_manager, ledger, lifecycle, log, membership, pricing
from .constants import CylinderStatus, MemberStatus, PaymentStatus, TransactionType
from .core_logic import BusinessRuleViolation, RuntimeContext


@dataclass(frozen=True)
class RentalCommand:
    """User intent for one combined rent-and-return action."""

    member_id: str
    rent_cylinder_ids: Tuple[str, ...] = ()
    return_cylinder_ids: Tuple[str, ...] = ()
    total_rent_cost: Decimal = Decimal("0")
    is_unpaid: bool = False
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class QuoteLine:
    cylinder_id: str
    serial_code: str
    gas_type: str
    size: str
    unit_price: Decimal
    is_custom: bool


@dataclass(frozen=True)
class RentalQuote:
    """Itemised price for a prospective rental."""

    lines: Tuple[QuoteLine, ...]
    total: Decimal
    has_unpriced_items: bool


def quote_rental(context: RuntimeContext, member_id: str, cylinder_ids: Sequence[str]) -> RentalQuote:
    """Price each cylinder for ``member_id`` and total the result.

    Items resolved to zero without a member override are flagged through
    ``has_unpriced_items`` so the operator can fix the price table before
    charging.
    """

    core_logic.get_member(context, member_id)
    lines: List[QuoteLine] = []
    for cylinder_id in cylinder_ids:
        cylinder = core_logic.get_cylinder(context, cylinder_id)
        quote = pricing.resolve_price(context, cylinder, member_id)
        lines.append(
            QuoteLine(
                cylinder_id=cylinder.cylinder_id,
                serial_code=cylinder.serial_code,
                gas_type=cylinder.gas_type,
                size=cylinder.size,
                unit_price=quote.unit_price,
                is_custom=quote.is_custom,
            )
        )
    total = sum((line.unit_price for line in lines), Decimal("0"))
    unpriced = any(line.unit_price == 0 and not line.is_custom for line in lines)
    if unpriced:
        log.warning("Rental quote for member '%s' contains unpriced items", member_id)
    return RentalQuote(lines=tuple(lines), total=total, has_unpriced_items=unpriced)


def validate_command(
    context: RuntimeContext,
    command: RentalCommand,
) -> Tuple[data_manager.MemberRow, List[data_manager.CylinderRow], List[data_manager.CylinderRow]]:
    """Check a :class:`RentalCommand` against the cached snapshot.

    Returns:
        tuple: The member, the cylinders to rent, and the cylinders to take
            back, each list in command order.

    Raises:
        MissingReferenceError: If the member or a cylinder is unknown.
        BusinessRuleViolation: For empty commands, repeated ids, ids both
            rented and returned, a cost without rented items, or renting to a
            member who is not Active.
        InvalidTransitionError: If a cylinder is not Available to rent or not
            held by the member for return.
        ValueError: If the total cost is negative.
    """

    member = core_logic.get_member(context, command.member_id)
    rent_ids = list(command.rent_cylinder_ids)
    return_ids = list(command.return_cylinder_ids)

    if not rent_ids and not return_ids:
        raise BusinessRuleViolation("Select at least one cylinder to rent or return")
    core_logic.require_nonnegative_money(command.total_rent_cost)
    if command.total_rent_cost > 0 and not rent_ids:
        raise BusinessRuleViolation("A rental cost requires at least one rented cylinder")
    overlap = set(rent_ids) & set(return_ids)
    if overlap:
        raise BusinessRuleViolation(
            f"Cylinders cannot be rented and returned together: {', '.join(sorted(overlap))}"
        )

    rented: List[data_manager.CylinderRow] = []
    if rent_ids:
        if member.status != MemberStatus.ACTIVE.value:
            log.warning("Rental to member '%s' in status %s rejected", member.member_id, member.status)
            raise BusinessRuleViolation(f"Member {member.company_name} is {member.status}, not Active")
        rented = lifecycle.validate_batch(context, rent_ids, CylinderStatus.RENTED)

    returned: List[data_manager.CylinderRow] = []
    if return_ids:
        returned = lifecycle.validate_batch(
            context, return_ids, CylinderStatus.EMPTY_REFILL, holder=member.member_id
        )
    return member, rented, returned


def compile_and_apply(context: RuntimeContext, command: RentalCommand) -> List[data_manager.TransactionRow]:
    """Validate and apply one rent-and-return action.

    Args:
        context (RuntimeContext): Runtime context providing store access and
            caches.
        command (RentalCommand): The combined action.

    Returns:
        list[data_manager.TransactionRow]: RENTAL_OUT entries followed by
            RETURN entries, in command order.
    """

    member, rented, returned = validate_command(context, command)
    timestamp = core_logic.resolve_timestamp(command.timestamp)
    # Durations come from the ledger as it stood before this action.
    snapshot = core_logic.list_transactions(context)
    entries: List[data_manager.TransactionRow] = []

    if command.is_unpaid and command.total_rent_cost > 0:
        membership.add_debt(context, member.member_id, command.total_rent_cost)

    if rented:
        rent_ids = [cylinder.cylinder_id for cylinder in rented]
        lifecycle.rent_out(context, rent_ids, member)
        shares = core_logic.split_evenly(command.total_rent_cost, len(rent_ids))
        status = PaymentStatus.UNPAID if command.is_unpaid else PaymentStatus.PAID
        entries.extend(
            ledger.build_entry(
                TransactionType.RENTAL_OUT,
                timestamp=timestamp,
                cylinder_id=cylinder_id,
                member_id=member.member_id,
                cost=share,
                payment_status=status,
            )
            for cylinder_id, share in zip(rent_ids, shares)
        )

    if returned:
        return_ids = [cylinder.cylinder_id for cylinder in returned]
        lifecycle.take_back(context, return_ids)
        for cylinder_id in return_ids:
            duration = ledger.held_duration_days(snapshot, cylinder_id, member.member_id, timestamp)
            entries.append(
                ledger.build_entry(
                    TransactionType.RETURN,
                    timestamp=timestamp,
                    cylinder_id=cylinder_id,
                    member_id=member.member_id,
                    rental_duration=duration if duration is not None else 0,
                )
            )

    ledger.append_entries(context, entries)
    log.info(
        "Rental for member '%s': %d out, %d back, total %s (%s)",
        member.member_id,
        len(rented),
        len(returned),
        command.total_rent_cost,
        "unpaid" if command.is_unpaid else "paid",
    )
    return entries
