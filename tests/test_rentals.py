"""Tests for rental quotes and the rent-and-return compiler."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from cylinder_ledger import catalog, core_logic, membership, pricing, rentals
from cylinder_ledger.constants import PaymentStatus, TransactionType

from builders import T0, add_member, cylinder_id, only_member


def _ids(context, *serials):
    return tuple(cylinder_id(context, serial) for serial in serials)


def test_quote_rental_itemises_base_prices(stocked_context):
    member = only_member(stocked_context)

    quote = rentals.quote_rental(stocked_context, member.member_id, _ids(stocked_context, "OX-001", "AR-001"))

    assert [(line.serial_code, line.unit_price) for line in quote.lines] == [
        ("OX-001", Decimal("225000")),
        ("AR-001", Decimal("180000")),
    ]
    assert quote.total == Decimal("405000")
    assert not quote.has_unpriced_items


def test_quote_rental_honours_member_price_of_zero(stocked_context):
    member = only_member(stocked_context)
    pricing.set_member_price(stocked_context, member.member_id, "Oxygen", "6m3", Decimal("0"))

    quote = rentals.quote_rental(stocked_context, member.member_id, _ids(stocked_context, "OX-001"))

    assert quote.lines[0].is_custom
    assert quote.total == Decimal("0")
    assert not quote.has_unpriced_items


def test_quote_rental_flags_unpriced_items(stocked_context):
    member = only_member(stocked_context)
    pricing.remove_base_price(stocked_context, "Argon", "1m3")

    quote = rentals.quote_rental(stocked_context, member.member_id, _ids(stocked_context, "OX-001", "AR-001"))

    assert quote.total == Decimal("225000")
    assert quote.has_unpriced_items


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def test_validate_command_returns_rows_in_command_order(stocked_context):
    member = only_member(stocked_context)
    command = rentals.RentalCommand(member.member_id, rent_cylinder_ids=_ids(stocked_context, "OX-002", "OX-001"))

    found_member, rented, returned = rentals.validate_command(stocked_context, command)

    assert found_member == member
    assert [row.serial_code for row in rented] == ["OX-002", "OX-001"]
    assert returned == []


@pytest.mark.parametrize(
    ("rent", "back", "cost"),
    [
        ((), (), "0"),
        ((), ("OX-001",), "1000"),
        (("OX-001",), ("OX-001",), "0"),
    ],
)
def test_validate_command_rejects_malformed_commands(stocked_context, rent, back, cost):
    member = only_member(stocked_context)
    command = rentals.RentalCommand(
        member.member_id,
        rent_cylinder_ids=_ids(stocked_context, *rent),
        return_cylinder_ids=_ids(stocked_context, *back),
        total_rent_cost=Decimal(cost),
    )
    with pytest.raises(core_logic.BusinessRuleViolation):
        rentals.validate_command(stocked_context, command)


def test_validate_command_rejects_negative_cost(stocked_context):
    member = only_member(stocked_context)
    command = rentals.RentalCommand(
        member.member_id, rent_cylinder_ids=_ids(stocked_context, "OX-001"), total_rent_cost=Decimal("-1")
    )
    with pytest.raises(ValueError):
        rentals.validate_command(stocked_context, command)


def test_validate_command_rejects_unknown_member(stocked_context):
    command = rentals.RentalCommand("MEM-404", rent_cylinder_ids=_ids(stocked_context, "OX-001"))
    with pytest.raises(core_logic.MissingReferenceError):
        rentals.validate_command(stocked_context, command)


def test_validate_command_rejects_returns_not_held_by_member(stocked_context):
    member = only_member(stocked_context)
    command = rentals.RentalCommand(member.member_id, return_cylinder_ids=_ids(stocked_context, "OX-001"))
    with pytest.raises(core_logic.InvalidTransitionError):
        rentals.validate_command(stocked_context, command)


def test_validate_command_rejects_rental_to_exiting_member(stocked_context):
    member = only_member(stocked_context)
    membership.request_exit(stocked_context, member.member_id, when=T0)
    command = rentals.RentalCommand(member.member_id, rent_cylinder_ids=_ids(stocked_context, "OX-001"))

    with pytest.raises(core_logic.BusinessRuleViolation, match="not Active"):
        rentals.validate_command(stocked_context, command)


# ---------------------------------------------------------------------------
# Compile and apply
# ---------------------------------------------------------------------------


def test_paid_rental_splits_cost_and_leaves_debt(stocked_context):
    member = only_member(stocked_context)
    ids = _ids(stocked_context, "OX-001", "OX-002")

    entries = rentals.compile_and_apply(
        stocked_context,
        rentals.RentalCommand(member.member_id, rent_cylinder_ids=ids, total_rent_cost=Decimal("450000"), timestamp=T0),
    )

    assert [entry.cylinder_id for entry in entries] == list(ids)
    assert {entry.cost for entry in entries} == {Decimal("225000")}
    assert {entry.payment_status for entry in entries} == {PaymentStatus.PAID.value}
    assert core_logic.get_member(stocked_context, member.member_id).total_debt == Decimal("0")
    assert {core_logic.get_cylinder(stocked_context, item).current_holder for item in ids} == {member.member_id}
    assert core_logic.list_transactions(stocked_context) == entries


def test_unpaid_rental_adds_whole_amount_to_debt(stocked_context):
    member = only_member(stocked_context)

    entries = rentals.compile_and_apply(
        stocked_context,
        rentals.RentalCommand(
            member.member_id,
            rent_cylinder_ids=_ids(stocked_context, "OX-001", "OX-002", "OX-003"),
            total_rent_cost=Decimal("100000"),
            is_unpaid=True,
            timestamp=T0,
        ),
    )

    assert core_logic.get_member(stocked_context, member.member_id).total_debt == Decimal("100000")
    assert {entry.payment_status for entry in entries} == {PaymentStatus.UNPAID.value}
    assert [entry.cost for entry in entries] == [Decimal("33333"), Decimal("33333"), Decimal("33334")]
    assert sum(entry.cost for entry in entries) == Decimal("100000")


def test_free_rental_records_zero_cost(stocked_context):
    member = only_member(stocked_context)

    (entry,) = rentals.compile_and_apply(
        stocked_context,
        rentals.RentalCommand(member.member_id, rent_cylinder_ids=_ids(stocked_context, "OX-001"), timestamp=T0),
    )

    assert entry.cost == Decimal("0")


def test_return_records_days_held(stocked_context):
    member = only_member(stocked_context)
    ids = _ids(stocked_context, "OX-001")
    rentals.compile_and_apply(
        stocked_context,
        rentals.RentalCommand(member.member_id, rent_cylinder_ids=ids, total_rent_cost=Decimal("225000"), timestamp=T0),
    )

    (entry,) = rentals.compile_and_apply(
        stocked_context,
        rentals.RentalCommand(member.member_id, return_cylinder_ids=ids, timestamp=T0 + timedelta(days=40, hours=5)),
    )

    assert entry.transaction_type == TransactionType.RETURN.value
    assert entry.rental_duration == 40
    assert entry.cost is None
    returned = core_logic.get_cylinder(stocked_context, ids[0])
    assert (returned.status, returned.current_holder) == ("Empty (Needs Refill)", None)


def test_return_without_rental_record_has_zero_duration(stocked_context):
    member = only_member(stocked_context)
    target = cylinder_id(stocked_context, "OX-001")
    catalog.edit_cylinder(stocked_context, target, status="Rented", current_holder=member.member_id)

    (entry,) = rentals.compile_and_apply(
        stocked_context,
        rentals.RentalCommand(member.member_id, return_cylinder_ids=(target,), timestamp=T0),
    )

    assert entry.rental_duration == 0


def test_combined_action_rents_before_returning(stocked_context):
    member = only_member(stocked_context)
    first = _ids(stocked_context, "OX-001")
    rentals.compile_and_apply(
        stocked_context,
        rentals.RentalCommand(member.member_id, rent_cylinder_ids=first, timestamp=T0),
    )

    entries = rentals.compile_and_apply(
        stocked_context,
        rentals.RentalCommand(
            member.member_id,
            rent_cylinder_ids=_ids(stocked_context, "OX-002"),
            return_cylinder_ids=first,
            total_rent_cost=Decimal("225000"),
            timestamp=T0 + timedelta(days=3),
        ),
    )

    assert [entry.transaction_type for entry in entries] == ["RENTAL_OUT", "RETURN"]
    assert entries[1].rental_duration == 3
    assert len(core_logic.list_transactions(stocked_context)) == 3


def test_rejected_command_writes_nothing(stocked_context):
    member = only_member(stocked_context)
    other = add_member(stocked_context, "PT Lain", when=T0 + timedelta(seconds=1))
    held = _ids(stocked_context, "OX-001")
    rentals.compile_and_apply(stocked_context, rentals.RentalCommand(other.member_id, rent_cylinder_ids=held, timestamp=T0))
    before = core_logic.list_transactions(stocked_context)

    with pytest.raises(core_logic.InvalidTransitionError):
        rentals.compile_and_apply(
            stocked_context,
            rentals.RentalCommand(
                member.member_id,
                rent_cylinder_ids=_ids(stocked_context, "OX-002") + held,
                total_rent_cost=Decimal("1000"),
                is_unpaid=True,
            ),
        )

    assert core_logic.list_transactions(stocked_context) == before
    assert core_logic.get_member(stocked_context, member.member_id).total_debt == Decimal("0")
    assert core_logic.get_cylinder(stocked_context, cylinder_id(stocked_context, "OX-002")).status == "Available"
