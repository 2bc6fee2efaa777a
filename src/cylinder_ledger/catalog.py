"""Catalog maintenance: cylinders, CSV bulk import, and refill stations.

Edits made here are administrative overrides. They validate enumerations and
serial uniqueness but bypass the lifecycle state machine entirely, which is
how delivered or damaged stock is put back into service.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from . import core_logic, data_manager, log
from .constants import (
    DEFAULT_WAREHOUSE_NAME,
    CylinderSize,
    CylinderStatus,
    Entity,
    GasType,
)
from .core_logic import BusinessRuleViolation, RuntimeContext


CSV_COLUMNS = ("serialCode", "gasType", "size", "status", "lastLocation")
EDITABLE_CYLINDER_FIELDS = frozenset(
    {"serial_code", "gas_type", "size", "status", "current_holder", "last_location"}
)
EDITABLE_STATION_FIELDS = frozenset({"name", "address", "contact_person", "phone"})
# Statuses a new cylinder may start in; Rented and Refilling need a holder.
HOLDERLESS_STATUSES = frozenset(
    status.value
    for status in CylinderStatus
    if status not in (CylinderStatus.RENTED, CylinderStatus.REFILLING)
)


@dataclass(frozen=True)
class CylinderDraft:
    """A validated CSV row waiting to be inserted."""

    serial_code: str
    gas_type: str
    size: str
    status: str
    last_location: str


@dataclass(frozen=True)
class CsvParseResult:
    """Rows accepted from a CSV upload and the per-line rejection messages."""

    accepted: Tuple[CylinderDraft, ...]
    errors: Tuple[Tuple[int, str], ...]


@dataclass(frozen=True)
class ImportReport:
    created: Tuple[data_manager.CylinderRow, ...]
    errors: Tuple[Tuple[int, str], ...]


@dataclass(frozen=True)
class RefillEstimate:
    """Sum of station prices for a batch; ``missing`` lists unpriced cylinders."""

    total: Decimal
    missing: Tuple[str, ...]


def normalize_serial(serial_code: str) -> str:
    return serial_code.strip().upper()


def _require_unique_serial(context: RuntimeContext, serial_code: str, *, ignore_id: Optional[str] = None) -> None:
    existing = core_logic.find_cylinder_by_serial(context, serial_code)
    if existing is not None and existing.cylinder_id != ignore_id:
        log.warning("Duplicate serial code '%s' rejected", serial_code)
        raise BusinessRuleViolation(f"Serial code already exists: {serial_code}")


def _require_status(value: Union[str, CylinderStatus]) -> CylinderStatus:
    try:
        return CylinderStatus(value)
    except ValueError as exc:
        log.warning("Unknown cylinder status '%s'", value)
        raise BusinessRuleViolation(f"Unknown cylinder status: {value}") from exc


# ---------------------------------------------------------------------------
# Cylinders
# ---------------------------------------------------------------------------


def add_cylinder(
    context: RuntimeContext,
    serial_code: str,
    gas_type: Union[str, GasType],
    size: Union[str, CylinderSize],
    *,
    status: Union[str, CylinderStatus] = CylinderStatus.AVAILABLE,
    last_location: Optional[str] = None,
    when: Optional[datetime] = None,
) -> data_manager.CylinderRow:
    """Register a new cylinder in the catalog.

    The serial code is stripped and upper-cased before the uniqueness check.
    New cylinders sit in the warehouse with no holder unless a location is
    supplied.

    Raises:
        BusinessRuleViolation: If the serial is empty or already used, or an
            enumerated field is outside its vocabulary, or the status requires a
            holder.
    """

    serial = normalize_serial(serial_code)
    if not serial:
        raise BusinessRuleViolation("Serial code is required")
    gas = core_logic.require_gas_type(gas_type)
    cylinder_size = core_logic.require_size(size)
    cylinder_status = _require_status(status)
    if cylinder_status.value not in HOLDERLESS_STATUSES:
        raise BusinessRuleViolation(f"New cylinders cannot start as {cylinder_status.value}")
    _require_unique_serial(context, serial)

    record = data_manager.CylinderRow(
        cylinder_id=core_logic.generate_record_id("CYL", when=core_logic.resolve_timestamp(when)),
        serial_code=serial,
        gas_type=gas.value,
        size=cylinder_size.value,
        status=cylinder_status.value,
        current_holder=None,
        last_location=last_location or context.settings.warehouse_name,
    )
    core_logic.insert_records(context, Entity.CYLINDERS, record)
    log.info("Added cylinder '%s' (%s %s)", record.serial_code, record.gas_type, record.size)
    return record


def edit_cylinder(context: RuntimeContext, cylinder_id: str, /, **changes: Any) -> data_manager.CylinderRow:
    """Apply an administrative edit to a cylinder, bypassing the state machine.

    Raises:
        MissingReferenceError: If ``cylinder_id`` is unknown.
        BusinessRuleViolation: If a field is not editable, an enumerated value
            is invalid, or the new serial collides with another cylinder.
    """

    cylinder = core_logic.get_cylinder(context, cylinder_id)
    unknown = set(changes) - EDITABLE_CYLINDER_FIELDS
    if unknown:
        raise BusinessRuleViolation(f"Fields not editable: {', '.join(sorted(unknown))}")

    patch = dict(changes)
    if "serial_code" in patch:
        patch["serial_code"] = normalize_serial(patch["serial_code"])
        if not patch["serial_code"]:
            raise BusinessRuleViolation("Serial code is required")
        _require_unique_serial(context, patch["serial_code"], ignore_id=cylinder_id)
    if "gas_type" in patch:
        patch["gas_type"] = core_logic.require_gas_type(patch["gas_type"]).value
    if "size" in patch:
        patch["size"] = core_logic.require_size(patch["size"]).value
    if "status" in patch:
        patch["status"] = _require_status(patch["status"]).value

    core_logic.update_records(context, Entity.CYLINDERS, cylinder_id, patch)
    log.info("Admin edit on cylinder '%s': %s", cylinder.serial_code, ", ".join(sorted(patch)))
    return core_logic.get_cylinder(context, cylinder_id)


def delete_cylinder(context: RuntimeContext, cylinder_id: str) -> None:
    """Remove a cylinder from the catalog.

    Ledger entries keep the dangling id and render it as ``"Unknown"``.
    """

    cylinder = core_logic.get_cylinder(context, cylinder_id)
    core_logic.delete_records(context, Entity.CYLINDERS, cylinder_id)
    log.info("Deleted cylinder '%s'", cylinder.serial_code)


def parse_cylinder_csv(
    text: str,
    existing_serials: Iterable[str],
    *,
    warehouse_name: str = DEFAULT_WAREHOUSE_NAME,
) -> CsvParseResult:
    """Validate a cylinder CSV upload without touching the store.

    The header row must name at least ``serialCode``, ``gasType`` and
    ``size``. A row is rejected when its serial is empty or already known
    (from the catalog or an earlier row), or when its gas type or size is not
    recognised. A missing, unknown, or holder-bound (Rented, Refilling)
    status becomes Available; a missing location becomes ``warehouse_name``.

    Args:
        text (str): Raw CSV content. A UTF-8 byte order mark is tolerated.
        existing_serials (Iterable[str]): Serial codes already in the catalog.
        warehouse_name (str): Default location for rows without one.

    Returns:
        CsvParseResult: Accepted drafts and ``(line number, message)`` errors.

    Raises:
        BusinessRuleViolation: If the content is empty or the header is
            missing required columns.
    """

    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")), skipinitialspace=True)
    header = [name.strip() for name in reader.fieldnames or []]
    if not set(CSV_COLUMNS[:3]).issubset(header):
        log.warning("CSV import rejected: header %s", header)
        raise BusinessRuleViolation("CSV is empty or missing headers")

    seen = {normalize_serial(serial) for serial in existing_serials}
    accepted: List[CylinderDraft] = []
    errors: List[Tuple[int, str]] = []

    for raw in reader:
        row = {(key or "").strip(): (value or "").strip() for key, value in raw.items() if isinstance(value, str)}
        if not any(row.values()):
            continue
        line = reader.line_num
        serial = normalize_serial(row.get("serialCode", ""))
        gas = row.get("gasType", "")
        size = row.get("size", "")
        status = row.get("status", "")

        if not serial:
            errors.append((line, "Missing serial code"))
            continue
        if serial in seen:
            errors.append((line, f"Duplicate serial code {serial}"))
            continue
        if gas not in {item.value for item in GasType}:
            errors.append((line, "Invalid Gas Type"))
            continue
        if size not in {item.value for item in CylinderSize}:
            errors.append((line, "Invalid Size"))
            continue

        seen.add(serial)
        accepted.append(
            CylinderDraft(
                serial_code=serial,
                gas_type=gas,
                size=size,
                status=status if status in HOLDERLESS_STATUSES else CylinderStatus.AVAILABLE.value,
                last_location=row.get("lastLocation") or warehouse_name,
            )
        )

    if errors:
        log.warning("CSV import: %d rows accepted, %d rejected", len(accepted), len(errors))
    return CsvParseResult(accepted=tuple(accepted), errors=tuple(errors))


def import_cylinders_csv(context: RuntimeContext, text: str, *, when: Optional[datetime] = None) -> ImportReport:
    """Parse ``text`` and insert every accepted row in one batch."""

    existing = [cylinder.serial_code for cylinder in core_logic.list_cylinders(context)]
    parsed = parse_cylinder_csv(text, existing, warehouse_name=context.settings.warehouse_name)
    timestamp = core_logic.resolve_timestamp(when)

    created = tuple(
        data_manager.CylinderRow(
            cylinder_id=core_logic.generate_record_id("CYL", when=timestamp, sequence=index),
            serial_code=draft.serial_code,
            gas_type=draft.gas_type,
            size=draft.size,
            status=draft.status,
            current_holder=None,
            last_location=draft.last_location,
        )
        for index, draft in enumerate(parsed.accepted, start=1)
    )
    if created:
        core_logic.insert_records(context, Entity.CYLINDERS, list(created))
        log.info("Imported %d cylinders from CSV", len(created))
    return ImportReport(created=created, errors=parsed.errors)


# ---------------------------------------------------------------------------
# Refill stations
# ---------------------------------------------------------------------------


def add_refill_station(
    context: RuntimeContext,
    name: str,
    *,
    address: str = "",
    contact_person: str = "",
    phone: str = "",
) -> data_manager.RefillStationRow:
    if not name.strip():
        raise BusinessRuleViolation("Station name is required")
    record = data_manager.RefillStationRow(
        station_id=core_logic.generate_record_id("ST"),
        name=name.strip(),
        address=address,
        contact_person=contact_person,
        phone=phone,
    )
    core_logic.insert_records(context, Entity.REFILL_STATIONS, record)
    log.info("Added refill station '%s'", record.name)
    return record


def update_refill_station(context: RuntimeContext, station_id: str, /, **changes: Any) -> data_manager.RefillStationRow:
    core_logic.get_refill_station(context, station_id)
    unknown = set(changes) - EDITABLE_STATION_FIELDS
    if unknown:
        raise BusinessRuleViolation(f"Fields not editable: {', '.join(sorted(unknown))}")
    if "name" in changes and not str(changes["name"]).strip():
        raise BusinessRuleViolation("Station name is required")
    core_logic.update_records(context, Entity.REFILL_STATIONS, station_id, changes)
    log.info("Updated refill station '%s'", station_id)
    return core_logic.get_refill_station(context, station_id)


def delete_refill_station(context: RuntimeContext, station_id: str) -> None:
    """Remove a station together with its negotiated price list."""

    station = core_logic.get_refill_station(context, station_id)
    core_logic.delete_records(context, Entity.REFILL_STATIONS, station_id)
    removed = core_logic.delete_records(context, Entity.REFILL_PRICES, {"station_id": station_id})
    log.info("Deleted refill station '%s' and %d price rows", station.name, removed)


def list_refill_prices(context: RuntimeContext, station_id: str) -> List[data_manager.RefillPriceRow]:
    return [
        row
        for row in core_logic.list_rows(context, Entity.REFILL_PRICES)
        if row.station_id == station_id
    ]


def set_refill_prices(
    context: RuntimeContext,
    station_id: str,
    prices: Mapping[Tuple[Union[str, GasType], Union[str, CylinderSize]], Decimal],
) -> List[data_manager.RefillPriceRow]:
    """Replace a station's price list with ``prices``.

    Every entry is validated before the old list is removed.
    """

    core_logic.get_refill_station(context, station_id)
    timestamp = core_logic.resolve_timestamp(None)
    rows: List[data_manager.RefillPriceRow] = []
    for index, ((gas_type, size), price) in enumerate(prices.items(), start=1):
        gas = core_logic.require_gas_type(gas_type)
        cylinder_size = core_logic.require_size(size)
        core_logic.require_nonnegative_money(price)
        rows.append(
            data_manager.RefillPriceRow(
                price_id=core_logic.generate_record_id("RP", when=timestamp, sequence=index),
                station_id=station_id,
                gas_type=gas.value,
                size=cylinder_size.value,
                price=price,
            )
        )

    core_logic.delete_records(context, Entity.REFILL_PRICES, {"station_id": station_id})
    if rows:
        core_logic.insert_records(context, Entity.REFILL_PRICES, rows)
    log.info("Set %d refill prices for station '%s'", len(rows), station_id)
    return rows


def estimate_refill_cost(
    context: RuntimeContext,
    station_id: str,
    cylinders: Sequence[data_manager.CylinderRow],
) -> RefillEstimate:
    """Estimate what ``station_id`` charges to refill ``cylinders``.

    Cylinders with no matching price row count as zero and are listed in
    ``missing``.
    """

    table = {(row.gas_type, row.size): row.price for row in list_refill_prices(context, station_id)}
    total = Decimal("0")
    missing: List[str] = []
    for cylinder in cylinders:
        price = table.get((cylinder.gas_type, cylinder.size))
        if price is None:
            missing.append(cylinder.cylinder_id)
            continue
        total += price
    if missing:
        log.warning("No refill price at station '%s' for %d cylinders", station_id, len(missing))
    return RefillEstimate(total=total, missing=tuple(missing))
