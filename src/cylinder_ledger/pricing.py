"""Unit price resolution and price table maintenance.

A member-specific override for a (gas type, size) pair always wins over the
shared base price. When neither table has an entry the resolver returns zero
instead of raising: a missing price must never block a rental, but every
caller that totals resolved prices has to surface the gap to the operator.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional, Union

from . import core_logic, data_manager, log
from .constants import CylinderSize, Entity, GasType
from .core_logic import RuntimeContext


@dataclass(frozen=True)
class PriceQuote:
    """Resolved unit price and whether it came from a member override."""

    unit_price: Decimal
    is_custom: bool


def resolve_price_from(
    cylinder: data_manager.CylinderRow,
    member_id: str,
    member_prices: Iterable[data_manager.MemberPriceRow],
    base_prices: Iterable[data_manager.BasePriceRow],
) -> PriceQuote:
    """Pure resolution over already-loaded price tables.

    Args:
        cylinder (data_manager.CylinderRow): Cylinder whose gas type and size
            select the price row.
        member_id (str): Member the price is quoted for.
        member_prices (Iterable[MemberPriceRow]): Override rows, any member.
        base_prices (Iterable[BasePriceRow]): Shared default rows.

    Returns:
        PriceQuote: The override with ``is_custom=True``, else the base price,
            else zero. Never raises for missing data.
    """

    for row in member_prices:
        if row.member_id == member_id and row.gas_type == cylinder.gas_type and row.size == cylinder.size:
            return PriceQuote(unit_price=row.price, is_custom=True)
    for row in base_prices:
        if row.gas_type == cylinder.gas_type and row.size == cylinder.size:
            return PriceQuote(unit_price=row.price, is_custom=False)
    return PriceQuote(unit_price=Decimal("0"), is_custom=False)


def resolve_price(context: RuntimeContext, cylinder: data_manager.CylinderRow, member_id: str) -> PriceQuote:
    """Resolve the unit price for ``cylinder`` when rented by ``member_id``."""

    quote = resolve_price_from(
        cylinder,
        member_id,
        core_logic.list_rows(context, Entity.MEMBER_PRICES),
        core_logic.list_rows(context, Entity.BASE_PRICES),
    )
    if quote.unit_price == 0 and not quote.is_custom:
        log.warning(
            "No price configured for %s %s (member '%s'); quoting zero",
            cylinder.gas_type,
            cylinder.size,
            member_id,
        )
    return quote


def list_base_prices(context: RuntimeContext) -> List[data_manager.BasePriceRow]:
    return core_logic.list_rows(context, Entity.BASE_PRICES)


def list_member_prices(context: RuntimeContext, member_id: Optional[str] = None) -> List[data_manager.MemberPriceRow]:
    """Return override rows, optionally restricted to one member."""

    rows = core_logic.list_rows(context, Entity.MEMBER_PRICES)
    if member_id is None:
        return rows
    return [row for row in rows if row.member_id == member_id]


def set_base_price(
    context: RuntimeContext,
    gas_type: Union[str, GasType],
    size: Union[str, CylinderSize],
    price: Decimal,
) -> data_manager.BasePriceRow:
    """Create or replace the base price for a (gas type, size) pair.

    Raises:
        BusinessRuleViolation: If ``gas_type`` or ``size`` is unknown.
        ValueError: If ``price`` is negative.
    """

    gas = core_logic.require_gas_type(gas_type)
    cylinder_size = core_logic.require_size(size)
    core_logic.require_nonnegative_money(price)

    for row in list_base_prices(context):
        if row.gas_type == gas.value and row.size == cylinder_size.value:
            core_logic.update_records(context, Entity.BASE_PRICES, row.price_id, {"price": price})
            log.info("Updated base price %s %s to %s", gas.value, cylinder_size.value, price)
            return data_manager.BasePriceRow(row.price_id, gas.value, cylinder_size.value, price)

    record = data_manager.BasePriceRow(
        price_id=core_logic.generate_record_id("BP"),
        gas_type=gas.value,
        size=cylinder_size.value,
        price=price,
    )
    core_logic.insert_records(context, Entity.BASE_PRICES, record)
    log.info("Created base price %s %s at %s", gas.value, cylinder_size.value, price)
    return record


def remove_base_price(context: RuntimeContext, gas_type: Union[str, GasType], size: Union[str, CylinderSize]) -> bool:
    gas = core_logic.require_gas_type(gas_type)
    cylinder_size = core_logic.require_size(size)
    removed = core_logic.delete_records(
        context, Entity.BASE_PRICES, {"gas_type": gas.value, "size": cylinder_size.value}
    )
    if removed:
        log.info("Removed base price %s %s", gas.value, cylinder_size.value)
    return removed > 0


def set_member_price(
    context: RuntimeContext,
    member_id: str,
    gas_type: Union[str, GasType],
    size: Union[str, CylinderSize],
    price: Decimal,
) -> data_manager.MemberPriceRow:
    """Create or replace a member's override for a (gas type, size) pair.

    Raises:
        MissingReferenceError: If ``member_id`` is unknown.
        BusinessRuleViolation: If ``gas_type`` or ``size`` is unknown.
        ValueError: If ``price`` is negative.
    """

    core_logic.get_member(context, member_id)
    gas = core_logic.require_gas_type(gas_type)
    cylinder_size = core_logic.require_size(size)
    core_logic.require_nonnegative_money(price)

    for row in list_member_prices(context, member_id):
        if row.gas_type == gas.value and row.size == cylinder_size.value:
            core_logic.update_records(context, Entity.MEMBER_PRICES, row.price_id, {"price": price})
            log.info("Updated custom price for member '%s' %s %s to %s", member_id, gas.value, cylinder_size.value, price)
            return data_manager.MemberPriceRow(row.price_id, member_id, gas.value, cylinder_size.value, price)

    record = data_manager.MemberPriceRow(
        price_id=core_logic.generate_record_id("MP"),
        member_id=member_id,
        gas_type=gas.value,
        size=cylinder_size.value,
        price=price,
    )
    core_logic.insert_records(context, Entity.MEMBER_PRICES, record)
    log.info("Created custom price for member '%s' %s %s at %s", member_id, gas.value, cylinder_size.value, price)
    return record


def remove_member_price(
    context: RuntimeContext,
    member_id: str,
    gas_type: Union[str, GasType],
    size: Union[str, CylinderSize],
) -> bool:
    gas = core_logic.require_gas_type(gas_type)
    cylinder_size = core_logic.require_size(size)
    removed = core_logic.delete_records(
        context,
        Entity.MEMBER_PRICES,
        {"member_id": member_id, "gas_type": gas.value, "size": cylinder_size.value},
    )
    if removed:
        log.info("Removed custom price for member '%s' %s %s", member_id, gas.value, cylinder_size.value)
    return removed > 0
