"""Append-only transaction ledger and the read-side folds over it.

Entries are written once and never edited, with one exception: a debt payment
flips the ``payment_status`` of the rental-out entries it settles. Everything
else in this module is a pure computation over a list of
:class:`~cylinder_ledger.data_manager.TransactionRow` values (held duration,
overdue tiers, outstanding bills, the audit trail).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Mapping, Optional, Sequence

from . import core_logic, data_manager, log
from .constants import (
    LONG_TERM_DAYS,
    OVERDUE_TIERS,
    UNKNOWN_LABEL,
    Entity,
    PaymentStatus,
    TransactionType,
)
from .core_logic import RuntimeContext


HISTORY_PAGE_SIZE = 15


@dataclass(frozen=True)
class AuditEntry:
    """Ledger entry joined with the display fields of the records it references."""

    transaction: data_manager.TransactionRow
    serial_code: str
    company_name: str
    station_name: str
    description: str


def build_entry(
    transaction_type: TransactionType,
    *,
    timestamp: datetime,
    cylinder_id: Optional[str] = None,
    member_id: Optional[str] = None,
    refill_station_id: Optional[str] = None,
    cost: Optional[Decimal] = None,
    payment_status: Optional[PaymentStatus] = None,
    rental_duration: Optional[int] = None,
    related_transaction_ids: Sequence[str] = (),
    notes: Optional[str] = None,
) -> data_manager.TransactionRow:
    """Materialize a ledger entry with a generated identifier.

    Per-cylinder entries carry the cylinder id in their identifier so that a
    batch written within one microsecond still produces unique keys.
    """
    return data_manager.TransactionRow(
        transaction_id=core_logic.generate_transaction_id(
            transaction_type, when=timestamp, suffix=cylinder_id
        ),
        timestamp_iso=timestamp.isoformat(),
        transaction_type=transaction_type.value,
        cylinder_id=cylinder_id,
        member_id=member_id,
        refill_station_id=refill_station_id,
        cost=cost,
        payment_status=payment_status.value if payment_status is not None else None,
        rental_duration=rental_duration,
        related_transaction_ids=tuple(related_transaction_ids),
        notes=notes,
    )


def append_entries(context: RuntimeContext, entries: Sequence[data_manager.TransactionRow]) -> None:
    """Append ``entries`` to the ledger in one store call."""

    if not entries:
        return
    core_logic.insert_records(context, Entity.TRANSACTIONS, list(entries))
    log.info(
        "Appended %d ledger entries: %s",
        len(entries),
        ", ".join(entry.transaction_id for entry in entries),
    )


def latest_rental_out(
    transactions: Iterable[data_manager.TransactionRow],
    cylinder_id: str,
    member_id: Optional[str] = None,
) -> Optional[data_manager.TransactionRow]:
    """Return the most recent RENTAL_OUT entry for a cylinder (and member).

    "Most recent" is decided by the business timestamp, not insertion order.
    Entries sharing the latest timestamp resolve to the first one inserted.
    """

    candidates = [
        entry
        for entry in transactions
        if entry.transaction_type == TransactionType.RENTAL_OUT.value
        and entry.cylinder_id == cylinder_id
        and (member_id is None or entry.member_id == member_id)
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda entry: core_logic.parse_timestamp(entry.timestamp_iso))


def held_duration_days(
    transactions: Iterable[data_manager.TransactionRow],
    cylinder_id: str,
    member_id: Optional[str],
    now: datetime,
) -> Optional[int]:
    """Whole days since the latest rental-out of ``cylinder_id`` to ``member_id``.

    Returns ``None`` when no rental-out entry exists. A rental timestamp in
    the future yields zero.
    """

    entry = latest_rental_out(transactions, cylinder_id, member_id)
    if entry is None:
        return None
    elapsed = core_logic.resolve_timestamp(now) - core_logic.parse_timestamp(entry.timestamp_iso)
    return max(0, elapsed // timedelta(days=1))


def is_long_term(days: int, threshold: int = LONG_TERM_DAYS) -> bool:
    return days > threshold


def overdue_tier(days: int, tiers: Sequence[int] = OVERDUE_TIERS) -> Optional[int]:
    """Return the highest tier strictly exceeded by ``days``, or ``None``."""

    exceeded = [tier for tier in tiers if days > tier]
    return max(exceeded) if exceeded else None


def outstanding_bills(context: RuntimeContext, member_id: str) -> List[data_manager.TransactionRow]:
    """UNPAID rental-out entries for ``member_id`` in ledger order."""

    return [
        entry
        for entry in core_logic.list_transactions(context)
        if entry.transaction_type == TransactionType.RENTAL_OUT.value
        and entry.member_id == member_id
        and entry.payment_status == PaymentStatus.UNPAID.value
    ]


def describe_transaction(
    entry: data_manager.TransactionRow,
    cylinders: Mapping[str, data_manager.CylinderRow],
    members: Mapping[str, data_manager.MemberRow],
    stations: Mapping[str, data_manager.RefillStationRow],
) -> str:
    """Render a one-line human description of ``entry``.

    References that no longer resolve (deleted catalog rows) render as
    ``"Unknown"``.
    """

    cylinder = cylinders.get(entry.cylinder_id or "")
    member = members.get(entry.member_id or "")
    station = stations.get(entry.refill_station_id or "")
    serial = cylinder.serial_code if cylinder else UNKNOWN_LABEL
    gas = cylinder.gas_type if cylinder else UNKNOWN_LABEL
    company = member.company_name if member else UNKNOWN_LABEL
    station_name = station.name if station else UNKNOWN_LABEL

    kind = entry.transaction_type
    if kind == TransactionType.RENTAL_OUT.value:
        return f"Rented {gas} ({serial}) to {company}"
    if kind == TransactionType.RETURN.value:
        return f"Received {serial} from {company}"
    if kind == TransactionType.REFILL_OUT.value:
        return f"Sent {serial} to {station_name}"
    if kind == TransactionType.REFILL_IN.value:
        return f"Restocked {serial} from refill"
    if kind == TransactionType.DEPOSIT_REFUND.value:
        return f"Refunded deposit to {company}"
    if kind == TransactionType.DEBT_PAYMENT.value:
        return f"Debt payment from {company}"
    if kind == TransactionType.DELIVERY.value:
        return f"Dispatched {serial} for delivery"
    return kind


def _lookup_tables(context: RuntimeContext):
    return (
        {row.cylinder_id: row for row in core_logic.list_cylinders(context)},
        {row.member_id: row for row in core_logic.list_members(context)},
        {row.station_id: row for row in core_logic.list_refill_stations(context)},
    )


def audit_trail(
    context: RuntimeContext,
    *,
    transaction_type: Optional[TransactionType] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    search: Optional[str] = None,
) -> List[AuditEntry]:
    """Return the full ledger newest first, optionally filtered.

    Args:
        context (RuntimeContext): Active runtime context.
        transaction_type (TransactionType | None): Keep only this entry type.
        start (datetime | None): Inclusive lower bound on the entry timestamp.
        end (datetime | None): Inclusive upper bound on the entry timestamp.
        search (str | None): Case-insensitive text matched against the entry
            id, type, cylinder serial, member company name and station name.

    Returns:
        list[AuditEntry]: Matching entries joined with their display fields.
    """

    cylinders, members, stations = _lookup_tables(context)
    needle = search.strip().lower() if search else ""
    lower = core_logic.resolve_timestamp(start) if start is not None else None
    upper = core_logic.resolve_timestamp(end) if end is not None else None

    results: List[AuditEntry] = []
    for entry in core_logic.list_transactions(context):
        if transaction_type is not None and entry.transaction_type != TransactionType(transaction_type).value:
            continue
        moment = core_logic.parse_timestamp(entry.timestamp_iso)
        if lower is not None and moment < lower:
            continue
        if upper is not None and moment > upper:
            continue

        cylinder = cylinders.get(entry.cylinder_id or "")
        member = members.get(entry.member_id or "")
        station = stations.get(entry.refill_station_id or "")
        audit = AuditEntry(
            transaction=entry,
            serial_code=cylinder.serial_code if cylinder else UNKNOWN_LABEL,
            company_name=member.company_name if member else UNKNOWN_LABEL,
            station_name=station.name if station else UNKNOWN_LABEL,
            description=describe_transaction(entry, cylinders, members, stations),
        )
        if needle:
            haystack = " ".join(
                (
                    entry.transaction_id,
                    entry.transaction_type,
                    audit.serial_code,
                    audit.company_name,
                    audit.station_name,
                )
            ).lower()
            if needle not in haystack:
                continue
        results.append(audit)

    results.sort(key=lambda item: core_logic.parse_timestamp(item.transaction.timestamp_iso), reverse=True)
    return results


def member_history(
    context: RuntimeContext,
    member_id: str,
    page: int = 1,
    page_size: int = HISTORY_PAGE_SIZE,
) -> tuple[List[data_manager.TransactionRow], int]:
    """Return one page of a member's ledger entries, newest first, and the total count."""

    if page < 1:
        raise ValueError("Page numbers start at 1")
    rows, total = data_manager.select_rows(
        context.workbook,
        Entity.TRANSACTIONS,
        {"member_id": member_id},
        page=data_manager.Page(offset=(page - 1) * page_size, limit=page_size),
        order_by="timestamp_iso",
        descending=True,
    )
    return rows, total
