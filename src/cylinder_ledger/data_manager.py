"""Data access layer for the cylinder ledger.

This module provides low-level helpers that read from and write to the master
workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. The tabular store contract: ``select_rows``, ``insert_rows``,
   ``update_rows`` and ``delete_rows`` over the entities named in
   :class:`~cylinder_ledger.constants.Entity`. Each entity lives on its own
   worksheet whose first row holds the column headers.

The store is deliberately not transactional. Every call mutates the in-memory
workbook on its own; nothing groups several calls into one atomic unit.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, fields, replace
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Collection, Iterable, Mapping, Optional, Sequence, Union

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_WAREHOUSE_NAME,
    LONG_TERM_DAYS,
    LOW_STOCK_THRESHOLD,
    OVERDUE_TIERS,
    Entity,
)


CONFIG_FILE_NAME = "config.ini"


class StoreError(RuntimeError):
    """Raised when the backing store rejects a read or write."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    warehouse_name: str
    schema_version: str
    low_stock_threshold: int = LOW_STOCK_THRESHOLD
    long_term_days: int = LONG_TERM_DAYS
    overdue_tiers: tuple[int, ...] = OVERDUE_TIERS


@dataclass(frozen=True)
class Page:
    """Offset/limit window applied after filtering and ordering."""

    offset: int = 0
    limit: Optional[int] = None


@dataclass(frozen=True)
class CylinderRow:
    """In-memory view of a row from the ``cylinders`` sheet."""

    cylinder_id: str
    serial_code: str
    gas_type: str
    size: str
    status: str
    current_holder: Optional[str]
    last_location: str


@dataclass(frozen=True)
class MemberRow:
    """In-memory view of a row from the ``members`` sheet."""

    member_id: str
    name: str
    company_name: str
    address: str
    phone: str
    total_deposit: Decimal
    total_debt: Decimal
    status: str
    join_date_iso: str
    exit_request_date_iso: Optional[str] = None


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``transactions`` sheet."""

    transaction_id: str
    timestamp_iso: str
    transaction_type: str
    cylinder_id: Optional[str] = None
    member_id: Optional[str] = None
    refill_station_id: Optional[str] = None
    cost: Optional[Decimal] = None
    payment_status: Optional[str] = None
    rental_duration: Optional[int] = None
    related_transaction_ids: tuple[str, ...] = ()
    notes: Optional[str] = None


@dataclass(frozen=True)
class MemberPriceRow:
    """Per-member price override for a (gas type, size) pair."""

    price_id: str
    member_id: str
    gas_type: str
    size: str
    price: Decimal


@dataclass(frozen=True)
class BasePriceRow:
    """Shared default price for a (gas type, size) pair."""

    price_id: str
    gas_type: str
    size: str
    price: Decimal


@dataclass(frozen=True)
class RefillStationRow:
    """In-memory view of a row from the ``refill_stations`` sheet."""

    station_id: str
    name: str
    address: str = ""
    contact_person: str = ""
    phone: str = ""


@dataclass(frozen=True)
class RefillPriceRow:
    """Negotiated refill cost at one station for a (gas type, size) pair."""

    price_id: str
    station_id: str
    gas_type: str
    size: str
    price: Decimal


Row = Union[
    CylinderRow,
    MemberRow,
    TransactionRow,
    MemberPriceRow,
    BasePriceRow,
    RefillStationRow,
    RefillPriceRow,
]
Where = Mapping[str, Any]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. The ``[Reports]`` section is
    optional and falls back to the defaults in :mod:`constants`. Relative
    ``DataFile`` entries are anchored at ``base_path`` (or the current working
    directory) and resolved to an absolute path.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a numeric report option cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    warehouse_name = parser.get("System", "WarehouseName", fallback=DEFAULT_WAREHOUSE_NAME)
    low_stock = parser.getint("Reports", "LowStockThreshold", fallback=LOW_STOCK_THRESHOLD)
    long_term = parser.getint("Reports", "LongTermDays", fallback=LONG_TERM_DAYS)
    tiers_raw = parser.get("Reports", "OverdueTiers", fallback=None)
    overdue_tiers = OVERDUE_TIERS
    if tiers_raw:
        overdue_tiers = tuple(sorted(int(part) for part in tiers_raw.split(",") if part.strip()))

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        warehouse_name=warehouse_name,
        schema_version=schema_version,
        low_stock_threshold=low_stock,
        long_term_days=long_term,
        overdue_tiers=overdue_tiers,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------


def _optional_str(raw: object) -> Optional[str]:
    if raw is None or raw == "":
        return None
    return str(raw)


def _required_str(raw: object) -> str:
    return "" if raw is None else str(raw)


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None and raw != "" else Decimal(default)


def _optional_decimal(raw: object) -> Optional[Decimal]:
    return Decimal(str(raw)) if raw is not None and raw != "" else None


def _optional_int(raw: object) -> Optional[int]:
    return int(raw) if raw is not None and raw != "" else None


def _split_ids(raw: object) -> tuple[str, ...]:
    if raw is None:
        return ()
    return tuple(part.strip() for part in str(raw).split(",") if part.strip())


def _padded(raw_row: Sequence[object], width: int) -> list[object]:
    # Trailing empty cells are not always materialised by openpyxl.
    values = list(raw_row)[:width]
    return values + [None] * (width - len(values))


# ---------------------------------------------------------------------------
# Row serialization
# ---------------------------------------------------------------------------


def serialize_cylinder(record: CylinderRow) -> list[object]:
    return [
        record.cylinder_id,
        record.serial_code,
        record.gas_type,
        record.size,
        record.status,
        record.current_holder,
        record.last_location,
    ]


def deserialize_cylinder(raw_row: Sequence[object]) -> CylinderRow:
    """Convert a raw worksheet row into a :class:`CylinderRow`.

    Identifier and code fields are coerced to ``str`` so that codes Excel
    interpreted as numbers round-trip unchanged. An empty holder cell becomes
    ``None`` (warehouse).
    """

    cylinder_id, serial_code, gas_type, size, status, holder, location = _padded(raw_row, 7)
    return CylinderRow(
        cylinder_id=str(cylinder_id),
        serial_code=_required_str(serial_code),
        gas_type=_required_str(gas_type),
        size=_required_str(size),
        status=_required_str(status),
        current_holder=_optional_str(holder),
        last_location=_required_str(location),
    )


def serialize_member(record: MemberRow) -> list[object]:
    return [
        record.member_id,
        record.name,
        record.company_name,
        record.address,
        record.phone,
        record.total_deposit,
        record.total_debt,
        record.status,
        record.join_date_iso,
        record.exit_request_date_iso,
    ]


def deserialize_member(raw_row: Sequence[object]) -> MemberRow:
    """Convert a raw worksheet row into a :class:`MemberRow`.

    Balances are normalised into :class:`~decimal.Decimal` and default to zero
    when blank.
    """

    (
        member_id,
        name,
        company_name,
        address,
        phone,
        deposit_raw,
        debt_raw,
        status,
        join_date,
        exit_date,
    ) = _padded(raw_row, 10)
    return MemberRow(
        member_id=str(member_id),
        name=_required_str(name),
        company_name=_required_str(company_name),
        address=_required_str(address),
        phone=_required_str(phone),
        total_deposit=_to_decimal(deposit_raw),
        total_debt=_to_decimal(debt_raw),
        status=_required_str(status),
        join_date_iso=_required_str(join_date),
        exit_request_date_iso=_optional_str(exit_date),
    )


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction dataclass into the ledger column order.

    Related transaction identifiers are flattened into a comma separated cell
    so a debt payment can reference any number of settled bills.
    """

    return [
        record.transaction_id,
        record.timestamp_iso,
        record.transaction_type,
        record.cylinder_id,
        record.member_id,
        record.refill_station_id,
        record.cost,
        record.payment_status,
        record.rental_duration,
        ",".join(record.related_transaction_ids) or None,
        record.notes,
    ]


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw worksheet row into a strongly typed transaction record.

    Optional references stay ``None`` when the sheet leaves them blank, the
    cost stays ``None`` rather than zero so "no cost" and "zero cost" remain
    distinguishable, and the related-id cell is split back into a tuple.
    """

    (
        transaction_id,
        timestamp_iso,
        transaction_type,
        cylinder_id,
        member_id,
        station_id,
        cost_raw,
        payment_status,
        duration_raw,
        related_raw,
        notes,
    ) = _padded(raw_row, 11)
    return TransactionRow(
        transaction_id=str(transaction_id),
        timestamp_iso=_required_str(timestamp_iso),
        transaction_type=_required_str(transaction_type),
        cylinder_id=_optional_str(cylinder_id),
        member_id=_optional_str(member_id),
        refill_station_id=_optional_str(station_id),
        cost=_optional_decimal(cost_raw),
        payment_status=_optional_str(payment_status),
        rental_duration=_optional_int(duration_raw),
        related_transaction_ids=_split_ids(related_raw),
        notes=_optional_str(notes),
    )


def serialize_member_price(record: MemberPriceRow) -> list[object]:
    return [record.price_id, record.member_id, record.gas_type, record.size, record.price]


def deserialize_member_price(raw_row: Sequence[object]) -> MemberPriceRow:
    price_id, member_id, gas_type, size, price = _padded(raw_row, 5)
    return MemberPriceRow(
        price_id=str(price_id),
        member_id=_required_str(member_id),
        gas_type=_required_str(gas_type),
        size=_required_str(size),
        price=_to_decimal(price),
    )


def serialize_base_price(record: BasePriceRow) -> list[object]:
    return [record.price_id, record.gas_type, record.size, record.price]


def deserialize_base_price(raw_row: Sequence[object]) -> BasePriceRow:
    price_id, gas_type, size, price = _padded(raw_row, 4)
    return BasePriceRow(
        price_id=str(price_id),
        gas_type=_required_str(gas_type),
        size=_required_str(size),
        price=_to_decimal(price),
    )


def serialize_refill_station(record: RefillStationRow) -> list[object]:
    return [record.station_id, record.name, record.address, record.contact_person, record.phone]


def deserialize_refill_station(raw_row: Sequence[object]) -> RefillStationRow:
    station_id, name, address, contact, phone = _padded(raw_row, 5)
    return RefillStationRow(
        station_id=str(station_id),
        name=_required_str(name),
        address=_required_str(address),
        contact_person=_required_str(contact),
        phone=_required_str(phone),
    )


def serialize_refill_price(record: RefillPriceRow) -> list[object]:
    return [record.price_id, record.station_id, record.gas_type, record.size, record.price]


def deserialize_refill_price(raw_row: Sequence[object]) -> RefillPriceRow:
    price_id, station_id, gas_type, size, price = _padded(raw_row, 5)
    return RefillPriceRow(
        price_id=str(price_id),
        station_id=_required_str(station_id),
        gas_type=_required_str(gas_type),
        size=_required_str(size),
        price=_to_decimal(price),
    )


@dataclass(frozen=True)
class EntitySchema:
    """Describe how one entity maps onto its worksheet."""

    columns: tuple[str, ...]
    row_type: type
    key_field: str
    serialize: Callable[[Any], list[object]]
    deserialize: Callable[[Sequence[object]], Any]


ENTITY_SCHEMAS: Mapping[Entity, EntitySchema] = {
    Entity.CYLINDERS: EntitySchema(
        columns=("CylinderID", "SerialCode", "GasType", "Size", "Status", "CurrentHolder", "LastLocation"),
        row_type=CylinderRow,
        key_field="cylinder_id",
        serialize=serialize_cylinder,
        deserialize=deserialize_cylinder,
    ),
    Entity.MEMBERS: EntitySchema(
        columns=(
            "MemberID",
            "Name",
            "CompanyName",
            "Address",
            "Phone",
            "TotalDeposit",
            "TotalDebt",
            "Status",
            "JoinDate",
            "ExitRequestDate",
        ),
        row_type=MemberRow,
        key_field="member_id",
        serialize=serialize_member,
        deserialize=deserialize_member,
    ),
    Entity.TRANSACTIONS: EntitySchema(
        columns=(
            "TransactionID",
            "Timestamp",
            "TransactionType",
            "CylinderID",
            "MemberID",
            "RefillStationID",
            "Cost",
            "PaymentStatus",
            "RentalDuration",
            "RelatedTransactionIDs",
            "Notes",
        ),
        row_type=TransactionRow,
        key_field="transaction_id",
        serialize=serialize_transaction,
        deserialize=deserialize_transaction,
    ),
    Entity.MEMBER_PRICES: EntitySchema(
        columns=("PriceID", "MemberID", "GasType", "Size", "Price"),
        row_type=MemberPriceRow,
        key_field="price_id",
        serialize=serialize_member_price,
        deserialize=deserialize_member_price,
    ),
    Entity.BASE_PRICES: EntitySchema(
        columns=("PriceID", "GasType", "Size", "Price"),
        row_type=BasePriceRow,
        key_field="price_id",
        serialize=serialize_base_price,
        deserialize=deserialize_base_price,
    ),
    Entity.REFILL_STATIONS: EntitySchema(
        columns=("StationID", "Name", "Address", "ContactPerson", "Phone"),
        row_type=RefillStationRow,
        key_field="station_id",
        serialize=serialize_refill_station,
        deserialize=deserialize_refill_station,
    ),
    Entity.REFILL_PRICES: EntitySchema(
        columns=("PriceID", "StationID", "GasType", "Size", "Price"),
        row_type=RefillPriceRow,
        key_field="price_id",
        serialize=serialize_refill_price,
        deserialize=deserialize_refill_price,
    ),
}

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    entity.value: schema.columns for entity, schema in ENTITY_SCHEMAS.items()
}


# ---------------------------------------------------------------------------
# Store contract
# ---------------------------------------------------------------------------


def _schema(entity: Entity) -> EntitySchema:
    try:
        return ENTITY_SCHEMAS[Entity(entity)]
    except (KeyError, ValueError) as exc:
        raise KeyError(f"Unknown entity: {entity}") from exc


def _worksheet(workbook: Workbook, entity: Entity):
    sheet_name = Entity(entity).value
    try:
        return workbook[sheet_name]
    except KeyError as exc:
        log.error("Worksheet '%s' missing from workbook", sheet_name)
        raise StoreError(f"Worksheet not found: {sheet_name}") from exc


def _validate_fields(schema: EntitySchema, names: Iterable[str], entity: Entity) -> None:
    known = {f.name for f in fields(schema.row_type)}
    for name in names:
        if name not in known:
            raise KeyError(f"Unknown {Entity(entity).value} field: {name}")


def _matches(row: Any, where: Optional[Where]) -> bool:
    if not where:
        return True
    for field_name, expected in where.items():
        actual = getattr(row, field_name)
        if isinstance(expected, (set, frozenset, list, tuple)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def _normalise_target(schema: EntitySchema, id_or_where: Union[str, Where]) -> Where:
    if isinstance(id_or_where, Mapping):
        return id_or_where
    return {schema.key_field: id_or_where}


def _indexed_rows(workbook: Workbook, entity: Entity) -> Iterable[tuple[int, Any]]:
    schema = _schema(entity)
    sheet = _worksheet(workbook, entity)
    for row_idx, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield row_idx, schema.deserialize(raw)


def iter_rows(workbook: Workbook, entity: Entity) -> Iterable[Row]:
    """Iterate over the typed records stored on an entity's worksheet.

    The header row and fully empty rows are skipped; every other row is
    converted through the entity's deserializer.
    """

    for _, row in _indexed_rows(workbook, entity):
        yield row


def _sort_key(field_name: str) -> Callable[[Any], tuple[bool, Any]]:
    def key(row: Any) -> tuple[bool, Any]:
        value = getattr(row, field_name)
        return (value is None, value if value is not None else 0)

    return key


def select_rows(
    workbook: Workbook,
    entity: Entity,
    where: Optional[Where] = None,
    *,
    page: Optional[Page] = None,
    order_by: Optional[str] = None,
    descending: bool = False,
) -> tuple[list[Row], int]:
    """Read rows matching a filter, optionally ordered and paginated.

    ``where`` maps field names to an expected value. A ``list``, ``tuple`` or
    ``set`` value means "field IN collection". Ordering uses a stable sort, so
    rows with equal keys keep their sheet order.

    Args:
        workbook (Workbook): Workbook holding the entity sheet.
        entity (Entity): Target entity.
        where (Mapping[str, Any] | None): Equality / membership filter.
        page (Page | None): Offset/limit window applied last.
        order_by (str | None): Field to sort by.
        descending (bool): Reverse the ordering.

    Returns:
        tuple[list[Row], int]: The page of rows and the total number of rows
            matching ``where`` before pagination.

    Raises:
        KeyError: If ``where`` or ``order_by`` names an unknown field.
        StoreError: If the entity worksheet is missing.
    """

    schema = _schema(entity)
    _validate_fields(schema, [*(where or {}), *([order_by] if order_by else [])], entity)

    rows = [row for row in iter_rows(workbook, entity) if _matches(row, where)]
    if order_by:
        rows.sort(key=_sort_key(order_by), reverse=descending)
    total = len(rows)
    if page is not None:
        end = None if page.limit is None else page.offset + page.limit
        rows = rows[page.offset:end]
    return rows, total


def insert_rows(workbook: Workbook, entity: Entity, rows: Union[Row, Sequence[Row]]) -> None:
    """Append one or many records to an entity sheet.

    Every record is checked before anything is written: it must be of the
    entity's row type and its key must not collide with an existing row or
    another record of the same batch. A rejected batch leaves the sheet
    untouched.

    Raises:
        StoreError: On a type mismatch or a duplicate key.
    """

    schema = _schema(entity)
    batch = [rows] if not isinstance(rows, (list, tuple)) else list(rows)
    sheet = _worksheet(workbook, entity)

    existing = {getattr(row, schema.key_field) for row in iter_rows(workbook, entity)}
    for record in batch:
        if not isinstance(record, schema.row_type):
            raise StoreError(
                f"Cannot insert {type(record).__name__} into {Entity(entity).value}"
            )
        key = getattr(record, schema.key_field)
        if key in existing:
            log.error("Duplicate key '%s' rejected for %s", key, Entity(entity).value)
            raise StoreError(f"Duplicate {schema.key_field}: {key}")
        existing.add(key)

    for record in batch:
        sheet.append(schema.serialize(record))


def update_rows(
    workbook: Workbook,
    entity: Entity,
    id_or_where: Union[str, Where],
    patch: Mapping[str, Any],
) -> int:
    """Apply ``patch`` to every row matching an id or a filter.

    Only the fields named in ``patch`` change; each matching row is rewritten
    in place so sheet order is preserved.

    Returns:
        int: Number of rows updated (zero when nothing matched).

    Raises:
        KeyError: If the patch or filter names an unknown field, or the patch
            tries to change the entity key.
        StoreError: If the entity worksheet is missing.
    """

    schema = _schema(entity)
    where = _normalise_target(schema, id_or_where)
    _validate_fields(schema, [*where, *patch], entity)
    if schema.key_field in patch:
        raise KeyError(f"Cannot update key field: {schema.key_field}")

    sheet = _worksheet(workbook, entity)
    targets = [(idx, row) for idx, row in _indexed_rows(workbook, entity) if _matches(row, where)]
    for row_idx, row in targets:
        updated = replace(row, **patch)
        for col, value in enumerate(schema.serialize(updated), start=1):
            sheet.cell(row=row_idx, column=col).value = value
    return len(targets)


def delete_rows(workbook: Workbook, entity: Entity, id_or_where: Union[str, Where]) -> int:
    """Remove every row matching an id or a filter.

    Returns:
        int: Number of rows deleted.
    """

    schema = _schema(entity)
    where = _normalise_target(schema, id_or_where)
    _validate_fields(schema, where, entity)

    sheet = _worksheet(workbook, entity)
    indexes = [idx for idx, row in _indexed_rows(workbook, entity) if _matches(row, where)]
    # Delete bottom-up so earlier indexes stay valid.
    for row_idx in reversed(indexes):
        sheet.delete_rows(row_idx)
    return len(indexes)


def collect_ids(rows: Collection[Row], entity: Entity) -> list[str]:
    """Return the key of every row, in order."""

    key_field = _schema(entity).key_field
    return [getattr(row, key_field) for row in rows]
