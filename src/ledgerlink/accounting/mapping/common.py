"""Shared helpers for the entity mappers.

- Money: every monetary field is carried as {"amount": "<decimal>", "minor_units": <int>}
  with minor units = round_half_up(amount * 100)
- LinkIndex: pre-resolved remote id <-> local id lookups per entity type
- MappingContext: everything a mapper may read besides its input record

Mappers are pure: no clock, no I/O. The caller supplies as_of and the
link index.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from src.ledgerlink.accounting.errors import MappingError
from src.ledgerlink.accounting.schemas import EntityType

CENTS = Decimal("0.01")
_UNIT = Decimal("1")


# ── Money ───────────────────────────────────────────────────────────────────


def to_decimal(value: Any) -> Decimal:
    """Parse a remote numeric value into a Decimal rounded to cents. None -> 0."""
    if value is None or value == "":
        return Decimal("0.00")
    try:
        # str() first so floats keep their shortest repr, not binary noise
        return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise MappingError(f"Not a monetary amount: {value!r}") from exc


def minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(_UNIT, rounding=ROUND_HALF_UP))


def money(value: Any) -> dict[str, Any]:
    """Local money representation: decimal string plus integer minor units."""
    amount = to_decimal(value)
    return {"amount": str(amount), "minor_units": minor_units(amount)}


def money_amount(value: Mapping[str, Any] | None) -> Decimal:
    """Read the Decimal back out of a local money dict (missing -> 0)."""
    if not value:
        return Decimal("0.00")
    return to_decimal(value.get("amount"))


def remote_number(amount: Decimal) -> float:
    """JSON number for the remote API. Cent-rounded amounts survive the float."""
    return float(amount)


# ── Dates ───────────────────────────────────────────────────────────────────


def parse_date(value: Any) -> date | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError as exc:
        raise MappingError(f"Not a date: {value!r}") from exc


def date_str(value: Any) -> str | None:
    parsed = parse_date(value)
    return parsed.isoformat() if parsed else None


# ── Remote document access ──────────────────────────────────────────────────


def ref_value(document: Mapping[str, Any], key: str) -> str | None:
    """Value of a QuickBooks reference object ({"value": ..., "name": ...})."""
    ref = document.get(key) or {}
    value = ref.get("value") if isinstance(ref, Mapping) else None
    return str(value) if value not in (None, "") else None


def ref_name(document: Mapping[str, Any], key: str) -> str | None:
    ref = document.get(key) or {}
    return ref.get("name") if isinstance(ref, Mapping) else None


def nested(document: Mapping[str, Any], *path: str) -> Any:
    current: Any = document
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def compact(payload: dict[str, Any]) -> dict[str, Any]:
    """Drop None values so optional remote fields are omitted, not nulled."""
    return {k: v for k, v in payload.items() if v is not None}


# ── Link index & context ────────────────────────────────────────────────────


class LinkIndex:
    """Bidirectional remote id <-> local id lookup per entity type.

    Built by the orchestrator from the local store before mapping; the
    orchestrator adds entries as it creates entities during a run.
    """

    def __init__(self, links: Mapping[EntityType, Mapping[str, str]] | None = None) -> None:
        self._to_local: dict[EntityType, dict[str, str]] = {}
        self._to_remote: dict[EntityType, dict[str, str]] = {}
        for entity_type, pairs in (links or {}).items():
            for remote_id, local_id in pairs.items():
                self.add(entity_type, remote_id, local_id)

    def add(self, entity_type: EntityType, remote_id: str, local_id: str) -> None:
        self._to_local.setdefault(entity_type, {})[remote_id] = local_id
        self._to_remote.setdefault(entity_type, {})[local_id] = remote_id

    def local_id(self, entity_type: EntityType, remote_id: str | None) -> str | None:
        if remote_id is None:
            return None
        return self._to_local.get(entity_type, {}).get(remote_id)

    def remote_id(self, entity_type: EntityType, local_id: str | None) -> str | None:
        if local_id is None:
            return None
        return self._to_remote.get(entity_type, {}).get(local_id)


@dataclass(frozen=True)
class MappingContext:
    tenant_id: str
    as_of: datetime
    links: LinkIndex = field(default_factory=LinkIndex)

    def require_remote_id(self, entity_type: EntityType, local_id: str | None, what: str) -> str:
        """Remote id for a required foreign key when pushing.

        Raises:
            MappingError: If the referenced entity has not been synced yet.
        """
        remote_id = self.links.remote_id(entity_type, local_id)
        if remote_id is None:
            raise MappingError(f"{what} must be synced to the remote service first")
        return remote_id
