"""Tests for catalog maintenance, CSV import, and refill stations."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from cylinder_ledger import catalog, core_logic
from cylinder_ledger.constants import CylinderSize, CylinderStatus, GasType

from builders import T0, cylinder_id


CSV_TEXT = (
    "serialCode,gasType,size,status,lastLocation\n"
    "ox-201,Oxygen,6m3,,\n"
    "AR-202,Argon,1m3,Empty (Needs Refill),Gudang B\n"
    "OX-201,Oxygen,6m3,,\n"
    ",Oxygen,6m3,,\n"
    "HE-203,Helium,6m3,,\n"
    "OX-204,Oxygen,9m3,,\n"
    "OX-205,Oxygen,2m3,Rented,\n"
)


def test_add_cylinder_normalizes_serial_and_defaults_location(runtime_context):
    cylinder = catalog.add_cylinder(runtime_context, "  ox-900 ", "Oxygen", "6m3", when=T0)

    assert cylinder.serial_code == "OX-900"
    assert cylinder.cylinder_id == "CYL-20260105080000000000"
    assert cylinder.status == CylinderStatus.AVAILABLE.value
    assert cylinder.current_holder is None
    assert cylinder.last_location == "Test Warehouse"
    assert core_logic.list_cylinders(runtime_context) == [cylinder]


def test_add_cylinder_rejects_duplicate_serial_case_insensitively(runtime_context):
    catalog.add_cylinder(runtime_context, "OX-900", "Oxygen", "6m3", when=T0)
    with pytest.raises(core_logic.BusinessRuleViolation):
        catalog.add_cylinder(runtime_context, "ox-900", "Argon", "1m3")


@pytest.mark.parametrize(
    ("serial", "gas", "size", "status"),
    [
        ("", "Oxygen", "6m3", "Available"),
        ("OX-1", "Helium", "6m3", "Available"),
        ("OX-1", "Oxygen", "3m3", "Available"),
        ("OX-1", "Oxygen", "6m3", "Lost"),
        ("OX-1", "Oxygen", "6m3", "Rented"),
    ],
)
def test_add_cylinder_rejects_invalid_fields(runtime_context, serial, gas, size, status):
    with pytest.raises(core_logic.BusinessRuleViolation):
        catalog.add_cylinder(runtime_context, serial, gas, size, status=status)
    assert core_logic.list_cylinders(runtime_context) == []


def test_edit_cylinder_overrides_the_state_machine(stocked_context):
    target = cylinder_id(stocked_context, "OX-001")
    catalog.edit_cylinder(stocked_context, target, status="Delivery")

    edited = catalog.edit_cylinder(stocked_context, target, status="Available", last_location="Gudang B")

    assert (edited.status, edited.last_location) == ("Available", "Gudang B")


def test_edit_cylinder_rejects_unknown_fields_and_serial_collisions(stocked_context):
    target = cylinder_id(stocked_context, "OX-001")
    with pytest.raises(core_logic.BusinessRuleViolation):
        catalog.edit_cylinder(stocked_context, target, cylinder_id="X")
    with pytest.raises(core_logic.BusinessRuleViolation):
        catalog.edit_cylinder(stocked_context, target, serial_code="ox-002")
    assert catalog.edit_cylinder(stocked_context, target, serial_code="ox-001").serial_code == "OX-001"


def test_delete_cylinder(stocked_context):
    target = cylinder_id(stocked_context, "AR-001")
    catalog.delete_cylinder(stocked_context, target)

    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.get_cylinder(stocked_context, target)


# ---------------------------------------------------------------------------
# CSV import
# ---------------------------------------------------------------------------


def test_parse_cylinder_csv_reports_errors_by_line():
    result = catalog.parse_cylinder_csv(CSV_TEXT, ["ar-999"], warehouse_name="Gudang Utama")

    assert [draft.serial_code for draft in result.accepted] == ["OX-201", "AR-202", "OX-205"]
    assert result.errors == (
        (4, "Duplicate serial code OX-201"),
        (5, "Missing serial code"),
        (6, "Invalid Gas Type"),
        (7, "Invalid Size"),
    )


def test_parse_cylinder_csv_defaults_status_and_location():
    result = catalog.parse_cylinder_csv(CSV_TEXT, [], warehouse_name="Gudang Utama")
    first, second, rented = result.accepted

    assert (first.status, first.last_location) == ("Available", "Gudang Utama")
    assert (second.status, second.last_location) == ("Empty (Needs Refill)", "Gudang B")
    assert rented.status == "Available"


def test_parse_cylinder_csv_rejects_existing_serials():
    result = catalog.parse_cylinder_csv(CSV_TEXT, ["ox-201"])
    assert (2, "Duplicate serial code OX-201") in result.errors


def test_parse_cylinder_csv_tolerates_byte_order_mark():
    result = catalog.parse_cylinder_csv("\ufeffserialCode,gasType,size\nOX-1,Oxygen,1m3\n", [])
    assert [draft.serial_code for draft in result.accepted] == ["OX-1"]


@pytest.mark.parametrize("text", ["", "serialCode,size\nOX-1,1m3\n"])
def test_parse_cylinder_csv_requires_headers(text):
    with pytest.raises(core_logic.BusinessRuleViolation, match="missing headers"):
        catalog.parse_cylinder_csv(text, [])


def test_import_cylinders_csv_inserts_accepted_rows(stocked_context):
    report = catalog.import_cylinders_csv(stocked_context, CSV_TEXT, when=T0)

    assert [row.cylinder_id for row in report.created] == [
        "CYL-20260105080000000000-001",
        "CYL-20260105080000000000-002",
        "CYL-20260105080000000000-003",
    ]
    assert len(report.errors) == 4
    assert len(core_logic.list_cylinders(stocked_context)) == 4 + 3


def test_import_cylinders_csv_with_no_valid_rows_writes_nothing(runtime_context):
    report = catalog.import_cylinders_csv(runtime_context, "serialCode,gasType,size\n,Oxygen,1m3\n")

    assert report.created == ()
    assert core_logic.list_cylinders(runtime_context) == []


# ---------------------------------------------------------------------------
# Refill stations
# ---------------------------------------------------------------------------


def test_refill_station_lifecycle(runtime_context):
    station = catalog.add_refill_station(runtime_context, " Samator ", contact_person="Andi")
    assert station.name == "Samator"

    updated = catalog.update_refill_station(runtime_context, station.station_id, phone="021-555")
    assert (updated.contact_person, updated.phone) == ("Andi", "021-555")

    with pytest.raises(core_logic.BusinessRuleViolation):
        catalog.update_refill_station(runtime_context, station.station_id, name=" ")
    with pytest.raises(core_logic.BusinessRuleViolation):
        catalog.update_refill_station(runtime_context, station.station_id, station_id="ST-OTHER")
    with pytest.raises(core_logic.BusinessRuleViolation):
        catalog.add_refill_station(runtime_context, "")


def test_set_refill_prices_replaces_station_list(runtime_context, set_fixed_datetime):
    station = catalog.add_refill_station(runtime_context, "Samator")
    set_fixed_datetime(datetime(2026, 1, 6, tzinfo=UTC))
    catalog.set_refill_prices(
        runtime_context,
        station.station_id,
        {("Oxygen", "6m3"): Decimal("60000"), ("Argon", "1m3"): Decimal("90000")},
    )
    set_fixed_datetime(datetime(2026, 1, 7, tzinfo=UTC))

    rows = catalog.set_refill_prices(
        runtime_context, station.station_id, {(GasType.OXYGEN, CylinderSize.LARGE): Decimal("65000")}
    )

    assert catalog.list_refill_prices(runtime_context, station.station_id) == rows
    assert [row.price for row in rows] == [Decimal("65000")]


def test_estimate_refill_cost_lists_unpriced_cylinders(stocked_context):
    station = catalog.add_refill_station(stocked_context, "Samator")
    catalog.set_refill_prices(stocked_context, station.station_id, {("Oxygen", "6m3"): Decimal("60000")})
    cylinders = core_logic.list_cylinders(stocked_context)

    estimate = catalog.estimate_refill_cost(stocked_context, station.station_id, cylinders)

    assert estimate.total == Decimal("180000")
    assert estimate.missing == (cylinder_id(stocked_context, "AR-001"),)


def test_delete_refill_station_removes_its_prices(runtime_context):
    station = catalog.add_refill_station(runtime_context, "Samator")
    catalog.set_refill_prices(runtime_context, station.station_id, {("Oxygen", "6m3"): Decimal("60000")})

    catalog.delete_refill_station(runtime_context, station.station_id)

    assert core_logic.list_refill_stations(runtime_context) == []
    assert catalog.list_refill_prices(runtime_context, station.station_id) == []
