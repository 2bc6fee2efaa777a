"""Cylinder status state machine and the batch movements built on it.

Legal moves::

    Available  -> Rented       (rental-out)
    Rented     -> EmptyRefill  (return)
    EmptyRefill-> Refilling    (send to refill station)
    Refilling  -> Available    (receive from refill station)
    Available  -> Delivery     (dispatch for delivery)
    any        -> Damaged      (manual flag)

There is no move out of Delivery; delivered stock is reset through the
catalog's admin edit. Batch operations validate every cylinder against the
cached catalog first and then issue one store update filtered by
``cylinder_id IN batch``. State is written before the ledger entries that
explain it.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Mapping, Optional, Sequence

from . import core_logic, data_manager, ledger, log
from .constants import (
    IN_TRANSIT_LOCATION,
    REFILL_STATION_HOLDER,
    CylinderStatus,
    Entity,
    TransactionType,
)
from .core_logic import InvalidTransitionError, RuntimeContext


LEGAL_TRANSITIONS: Mapping[CylinderStatus, frozenset[CylinderStatus]] = {
    CylinderStatus.AVAILABLE: frozenset({CylinderStatus.RENTED, CylinderStatus.DELIVERY}),
    CylinderStatus.RENTED: frozenset({CylinderStatus.EMPTY_REFILL}),
    CylinderStatus.EMPTY_REFILL: frozenset({CylinderStatus.REFILLING}),
    CylinderStatus.REFILLING: frozenset({CylinderStatus.AVAILABLE}),
    CylinderStatus.DELIVERY: frozenset(),
    CylinderStatus.DAMAGED: frozenset(),
}


def can_transition(current: str, target: CylinderStatus) -> bool:
    """Return ``True`` when ``current -> target`` is a legal move."""

    if target == CylinderStatus.DAMAGED:
        return True
    try:
        return target in LEGAL_TRANSITIONS[CylinderStatus(current)]
    except ValueError:
        return False


def check_holder_consistency(cylinder: data_manager.CylinderRow) -> bool:
    """Evaluate the status/holder invariant for one cylinder.

    Rented cylinders are held by a member, Refilling ones by the refill
    station marker, and Available, EmptyRefill and Delivery ones by nobody.
    Damaged cylinders keep whatever holder they had when flagged.
    """

    holder = cylinder.current_holder
    status = cylinder.status
    if status == CylinderStatus.RENTED.value:
        return holder is not None and holder != REFILL_STATION_HOLDER
    if status == CylinderStatus.REFILLING.value:
        return holder == REFILL_STATION_HOLDER
    if status in (
        CylinderStatus.AVAILABLE.value,
        CylinderStatus.EMPTY_REFILL.value,
        CylinderStatus.DELIVERY.value,
    ):
        return holder is None
    return status == CylinderStatus.DAMAGED.value


def validate_batch(
    context: RuntimeContext,
    cylinder_ids: Sequence[str],
    target: CylinderStatus,
    *,
    holder: Optional[str] = None,
) -> List[data_manager.CylinderRow]:
    """Check that every cylinder in the batch may move to ``target``.

    Args:
        context (RuntimeContext): Runtime context whose cached catalog is the
            validation snapshot.
        cylinder_ids (Sequence[str]): Batch of cylinder ids.
        target (CylinderStatus): Requested status.
        holder (str | None): When given, each cylinder must currently be held
            by this member.

    Returns:
        list[data_manager.CylinderRow]: The cylinders in batch order.

    Raises:
        BusinessRuleViolation: If the batch is empty or repeats an id.
        MissingReferenceError: If an id is unknown.
        InvalidTransitionError: If a cylinder is not in a state that allows
            the move, or is not held by ``holder``.
    """

    core_logic.require_unique_ids(cylinder_ids)
    cylinders = [core_logic.get_cylinder(context, cylinder_id) for cylinder_id in cylinder_ids]
    for cylinder in cylinders:
        if not can_transition(cylinder.status, target):
            log.warning(
                "Cylinder '%s' cannot move from %s to %s",
                cylinder.serial_code,
                cylinder.status,
                target.value,
            )
            raise InvalidTransitionError(
                f"Cylinder {cylinder.serial_code} is {cylinder.status}; cannot move to {target.value}"
            )
        if holder is not None and cylinder.current_holder != holder:
            log.warning("Cylinder '%s' is not held by member '%s'", cylinder.serial_code, holder)
            raise InvalidTransitionError(
                f"Cylinder {cylinder.serial_code} is not held by member {holder}"
            )
    return cylinders


def apply_batch(context: RuntimeContext, cylinder_ids: Sequence[str], patch: Mapping[str, object]) -> int:
    """Write ``patch`` to every cylinder in the batch with one filtered update.

    Raises:
        StoreError: If the store rejects the update or touches a different
            number of rows than requested.
    """

    count = core_logic.update_records(
        context, Entity.CYLINDERS, {"cylinder_id": list(cylinder_ids)}, patch
    )
    if count != len(cylinder_ids):
        log.error("Batch update touched %d of %d cylinders", count, len(cylinder_ids))
        raise data_manager.StoreError(
            f"Expected to update {len(cylinder_ids)} cylinders, updated {count}"
        )
    return count


def rent_out(context: RuntimeContext, cylinder_ids: Sequence[str], member: data_manager.MemberRow) -> int:
    """Available -> Rented for a validated batch; holder becomes ``member``."""

    return apply_batch(
        context,
        cylinder_ids,
        {
            "status": CylinderStatus.RENTED.value,
            "current_holder": member.member_id,
            "last_location": member.company_name,
        },
    )


def take_back(context: RuntimeContext, cylinder_ids: Sequence[str]) -> int:
    """Rented -> EmptyRefill for a validated batch; cylinders return to the warehouse."""

    return apply_batch(
        context,
        cylinder_ids,
        {
            "status": CylinderStatus.EMPTY_REFILL.value,
            "current_holder": None,
            "last_location": context.settings.warehouse_name,
        },
    )


def send_to_refill(
    context: RuntimeContext,
    station_id: str,
    cylinder_ids: Sequence[str],
    *,
    when: Optional[datetime] = None,
) -> List[data_manager.TransactionRow]:
    """Dispatch empty cylinders to a refill station.

    Every cylinder must be EmptyRefill. The batch moves to Refilling, held by
    the refill station marker and located at the station, and one REFILL_OUT
    entry per cylinder references the station.

    Raises:
        MissingReferenceError: If the station or a cylinder is unknown.
        InvalidTransitionError: If a cylinder is not awaiting refill.
    """

    station = core_logic.get_refill_station(context, station_id)
    validate_batch(context, cylinder_ids, CylinderStatus.REFILLING)
    timestamp = core_logic.resolve_timestamp(when)

    apply_batch(
        context,
        cylinder_ids,
        {
            "status": CylinderStatus.REFILLING.value,
            "current_holder": REFILL_STATION_HOLDER,
            "last_location": station.name,
        },
    )
    entries = [
        ledger.build_entry(
            TransactionType.REFILL_OUT,
            timestamp=timestamp,
            cylinder_id=cylinder_id,
            refill_station_id=station.station_id,
        )
        for cylinder_id in cylinder_ids
    ]
    ledger.append_entries(context, entries)
    log.info("Sent %d cylinders to refill station '%s'", len(cylinder_ids), station.name)
    return entries


def receive_from_refill(
    context: RuntimeContext,
    cylinder_ids: Sequence[str],
    total_cost: Decimal,
    *,
    when: Optional[datetime] = None,
) -> List[data_manager.TransactionRow]:
    """Restock refilled cylinders into the warehouse.

    ``total_cost`` is split evenly across the batch in whole rupiah, the last
    cylinder taking the remainder; each cylinder gets one
    REFILL_IN entry carrying its share.

    Raises:
        ValueError: If ``total_cost`` is negative.
        InvalidTransitionError: If a cylinder is not Refilling.
    """

    core_logic.require_nonnegative_money(total_cost)
    validate_batch(context, cylinder_ids, CylinderStatus.AVAILABLE)
    timestamp = core_logic.resolve_timestamp(when)
    shares = core_logic.split_evenly(total_cost, len(cylinder_ids))

    apply_batch(
        context,
        cylinder_ids,
        {
            "status": CylinderStatus.AVAILABLE.value,
            "current_holder": None,
            "last_location": context.settings.warehouse_name,
        },
    )
    entries = [
        ledger.build_entry(
            TransactionType.REFILL_IN,
            timestamp=timestamp,
            cylinder_id=cylinder_id,
            cost=share,
        )
        for cylinder_id, share in zip(cylinder_ids, shares)
    ]
    ledger.append_entries(context, entries)
    log.info("Received %d cylinders from refill (total cost %s)", len(cylinder_ids), total_cost)
    return entries


def dispatch_for_delivery(
    context: RuntimeContext,
    cylinder_ids: Sequence[str],
    delivery_date: Optional[datetime] = None,
) -> List[data_manager.TransactionRow]:
    """Move available cylinders out for delivery, dated ``delivery_date``."""

    validate_batch(context, cylinder_ids, CylinderStatus.DELIVERY)
    timestamp = core_logic.resolve_timestamp(delivery_date)

    apply_batch(
        context,
        cylinder_ids,
        {
            "status": CylinderStatus.DELIVERY.value,
            "last_location": IN_TRANSIT_LOCATION,
        },
    )
    entries = [
        ledger.build_entry(TransactionType.DELIVERY, timestamp=timestamp, cylinder_id=cylinder_id)
        for cylinder_id in cylinder_ids
    ]
    ledger.append_entries(context, entries)
    log.info("Dispatched %d cylinders for delivery", len(cylinder_ids))
    return entries


def mark_damaged(
    context: RuntimeContext,
    cylinder_id: str,
    *,
    clear_holder: bool = False,
) -> data_manager.CylinderRow:
    """Flag a cylinder as Damaged from any status.

    The holder is kept unless ``clear_holder`` is set, in which case the
    cylinder is also placed back at the warehouse.
    """

    cylinder = core_logic.get_cylinder(context, cylinder_id)
    patch: dict[str, object] = {"status": CylinderStatus.DAMAGED.value}
    if clear_holder:
        patch["current_holder"] = None
        patch["last_location"] = context.settings.warehouse_name
    core_logic.update_records(context, Entity.CYLINDERS, cylinder_id, patch)
    log.info("Marked cylinder '%s' as damaged (was %s)", cylinder.serial_code, cylinder.status)
    return core_logic.get_cylinder(context, cylinder_id)
