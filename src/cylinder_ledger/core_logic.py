"""Shared runtime layer for the cylinder ledger.

This module owns the :class:`RuntimeContext` every operation receives, the
per-context cache that mirrors the store between writes, the error taxonomy,
and the small validators and identifier helpers the component modules build
on. It consumes the Data Access Layer (DAL) for all I/O; the component modules
(``pricing``, ``lifecycle``, ``ledger``, ``membership``, ``rentals``) never
touch the workbook directly.

Cache policy: reads populate one bucket per entity on demand; every write that
the store accepts evicts the bucket of the entity it touched. A rejected write
leaves the cache as it was.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_DOWN, Decimal
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, MONEY_QUANTUM, CylinderSize, Entity, GasType, TransactionType


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced cylinder, member, station, or transaction is unknown."""


class InvalidTransitionError(BusinessRuleViolation):
    """Raised when a cylinder cannot move to the requested status."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by every operation."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


# Short designators prepended to generated ledger identifiers.
TRANSACTION_ID_PREFIXES: Mapping[TransactionType, str] = {
    TransactionType.RENTAL_OUT: "RO",
    TransactionType.RETURN: "RT",
    TransactionType.REFILL_OUT: "FO",
    TransactionType.REFILL_IN: "FI",
    TransactionType.DELIVERY: "DL",
    TransactionType.DEBT_PAYMENT: "DP",
    TransactionType.DEPOSIT_REFUND: "DR",
}


def resolve_timestamp(candidate: Optional[datetime] = None) -> datetime:
    """Resolve optional timestamps into consistent, timezone-aware values.

    Args:
        candidate (datetime | None): Caller-provided timestamp. Naive values
            are interpreted as UTC.

    Returns:
        datetime: ``candidate`` when provided, otherwise the current UTC
            datetime generated via :func:`datetime.now`.
    """

    if candidate is None:
        return datetime.now(UTC)
    if candidate.tzinfo is None:
        return candidate.replace(tzinfo=UTC)
    return candidate


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 ledger timestamp, assuming UTC when no offset is stored."""

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets are keyed by entity name and hold the rows read from the store
    plus derived lookups, so repeated reads within one command do not rescan
    the workbook.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Missing buckets are ignored so callers can request targeted invalidation
    without checking what was populated.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_entity_cache(context: RuntimeContext, entity: Entity) -> Dict[str, Any]:
    """Populate the cache bucket for ``entity`` on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` rows in sheet order and a
            ``by_id`` lookup keyed by the entity's primary key.
    """

    bucket = _get_cache_bucket(context, entity.value)
    if "all" not in bucket:
        rows, _ = data_manager.select_rows(context.workbook, entity)
        key_field = data_manager.ENTITY_SCHEMAS[entity].key_field
        bucket["all"] = rows
        bucket["by_id"] = {getattr(row, key_field): row for row in rows}
        log.debug("Populated %s cache with %d entries", entity.value, len(rows))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Resolves ``config.ini``, parses the settings, and opens the workbook. The
    resulting :class:`RuntimeContext` bundles the immutable settings with a
    mutable workbook handle and an empty cache store.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


# ---------------------------------------------------------------------------
# Cached reads
# ---------------------------------------------------------------------------


def list_rows(context: RuntimeContext, entity: Entity) -> List[Any]:
    """Return a copy of the cached rows for ``entity`` in sheet order."""

    return list(_ensure_entity_cache(context, entity)["all"])


def list_cylinders(context: RuntimeContext) -> List[data_manager.CylinderRow]:
    return list_rows(context, Entity.CYLINDERS)


def list_members(context: RuntimeContext) -> List[data_manager.MemberRow]:
    return list_rows(context, Entity.MEMBERS)


def list_transactions(context: RuntimeContext) -> List[data_manager.TransactionRow]:
    """Fetch the append-only ledger from cache, in insertion order.

    The returned list is a shallow copy so callers can sort or filter without
    mutating the shared cache.
    """
    return list_rows(context, Entity.TRANSACTIONS)


def list_refill_stations(context: RuntimeContext) -> List[data_manager.RefillStationRow]:
    return list_rows(context, Entity.REFILL_STATIONS)


def _lookup(context: RuntimeContext, entity: Entity, key: str, label: str) -> Any:
    cache = _ensure_entity_cache(context, entity)
    try:
        return cache["by_id"][key]
    except KeyError as exc:
        log.warning("%s lookup failed for id '%s'", label.capitalize(), key)
        raise MissingReferenceError(f"Unknown {label} id: {key}") from exc


def get_cylinder(context: RuntimeContext, cylinder_id: str) -> data_manager.CylinderRow:
    """Resolve a cylinder by id.

    Raises:
        MissingReferenceError: If ``cylinder_id`` is absent from the catalog.
    """
    return _lookup(context, Entity.CYLINDERS, cylinder_id, "cylinder")


def get_member(context: RuntimeContext, member_id: str) -> data_manager.MemberRow:
    """Resolve a member by id.

    Raises:
        MissingReferenceError: If ``member_id`` cannot be located.
    """
    return _lookup(context, Entity.MEMBERS, member_id, "member")


def get_refill_station(context: RuntimeContext, station_id: str) -> data_manager.RefillStationRow:
    return _lookup(context, Entity.REFILL_STATIONS, station_id, "refill station")


def get_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    return _lookup(context, Entity.TRANSACTIONS, transaction_id, "transaction")


def find_cylinder_by_serial(context: RuntimeContext, serial_code: str) -> Optional[data_manager.CylinderRow]:
    """Return the cylinder whose serial matches ``serial_code`` (case-insensitive)."""

    wanted = serial_code.strip().upper()
    for cylinder in _ensure_entity_cache(context, Entity.CYLINDERS)["all"]:
        if cylinder.serial_code.upper() == wanted:
            return cylinder
    return None


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def insert_records(context: RuntimeContext, entity: Entity, rows: Union[Any, Sequence[Any]]) -> None:
    """Insert rows through the DAL and evict the entity cache once accepted."""

    try:
        data_manager.insert_rows(context.workbook, entity, rows)
    except data_manager.StoreError:
        log.error("Store rejected insert into %s", entity.value)
        raise
    _invalidate_cache(context, entity.value)


def update_records(
    context: RuntimeContext,
    entity: Entity,
    id_or_where: Union[str, Mapping[str, Any]],
    patch: Mapping[str, Any],
) -> int:
    """Update rows through the DAL and evict the entity cache once accepted."""

    try:
        count = data_manager.update_rows(context.workbook, entity, id_or_where, patch)
    except data_manager.StoreError:
        log.error("Store rejected update on %s", entity.value)
        raise
    _invalidate_cache(context, entity.value)
    return count


def delete_records(context: RuntimeContext, entity: Entity, id_or_where: Union[str, Mapping[str, Any]]) -> int:
    """Delete rows through the DAL and evict the entity cache once accepted."""

    try:
        count = data_manager.delete_rows(context.workbook, entity, id_or_where)
    except data_manager.StoreError:
        log.error("Store rejected delete on %s", entity.value)
        raise
    _invalidate_cache(context, entity.value)
    return count


def generate_transaction_id(
    transaction_type: TransactionType,
    *,
    when: Optional[datetime] = None,
    suffix: Optional[str] = None,
) -> str:
    """Generate a sortable ledger identifier using UTC timestamps.

    Args:
        transaction_type (TransactionType): Entry type, mapped to a short
            prefix through ``TRANSACTION_ID_PREFIXES``.
        when (datetime | None): Timestamp used to build the identifier. When
            ``None`` the current UTC time is used.
        suffix (str | None): Disambiguator appended after a dash. Batch
            operations pass the cylinder id so entries written in the same
            microsecond stay unique.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}[-{suffix}]``.
    """
    when = when or resolve_timestamp(None)
    identifier = f"{TRANSACTION_ID_PREFIXES[transaction_type]}{when.strftime('%Y%m%d%H%M%S%f')}"
    return f"{identifier}-{suffix}" if suffix else identifier


def generate_record_id(prefix: str, *, when: Optional[datetime] = None, sequence: Optional[int] = None) -> str:
    """Generate an identifier for catalog, member, and price records."""

    when = when or resolve_timestamp(None)
    identifier = f"{prefix}-{when.strftime('%Y%m%d%H%M%S%f')}"
    return identifier if sequence is None else f"{identifier}-{sequence:03d}"


def require_positive_money(amount: Decimal) -> None:
    """Validate that a monetary value is strictly positive.

    Raises:
        ValueError: If ``amount`` is zero or negative.
    """
    if amount <= Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def split_evenly(total: Decimal, count: int) -> List[Decimal]:
    """Split ``total`` into ``count`` shares that add up to it exactly.

    Every share but the last is rounded down to :data:`MONEY_QUANTUM`; the
    last one carries the remainder.

    Raises:
        ValueError: If ``count`` is not positive.
    """
    if count <= 0:
        raise ValueError("Cannot split an amount into fewer than one share")
    share = (total / count).quantize(MONEY_QUANTUM, rounding=ROUND_DOWN)
    return [share] * (count - 1) + [total - share * (count - 1)]


def require_gas_type(value: Union[str, GasType]) -> GasType:
    """Coerce ``value`` into a :class:`GasType` or raise a validation error."""

    try:
        return GasType(value)
    except ValueError as exc:
        log.warning("Unknown gas type '%s'", value)
        raise BusinessRuleViolation(f"Unknown gas type: {value}") from exc


def require_size(value: Union[str, CylinderSize]) -> CylinderSize:
    """Coerce ``value`` into a :class:`CylinderSize` or raise a validation error."""

    try:
        return CylinderSize(value)
    except ValueError as exc:
        log.warning("Unknown cylinder size '%s'", value)
        raise BusinessRuleViolation(f"Unknown cylinder size: {value}") from exc


def require_unique_ids(ids: Sequence[str], *, label: str = "cylinder") -> None:
    """Reject empty batches and batches that repeat an identifier."""

    if not ids:
        log.warning("Empty %s batch rejected", label)
        raise BusinessRuleViolation(f"At least one {label} id is required")
    seen: set[str] = set()
    for item in ids:
        if item in seen:
            log.warning("Duplicate %s id '%s' in batch", label, item)
            raise BusinessRuleViolation(f"Duplicate {label} id in batch: {item}")
        seen.add(item)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context containing a newly opened workbook and
            an empty cache.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)
