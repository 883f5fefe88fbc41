"""Mapping registry: EntityType -> mapper functions.

binding_for() dispatches with an exhaustive match over the closed
EntityType enum, so adding a type without a mapper fails type checking.
The registry itself is built once by the composition root and injected
into the orchestrator and conflict manager.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, assert_never

from src.ledgerlink.accounting.errors import ConfigurationError
from src.ledgerlink.accounting.mapping import parties, transactions
from src.ledgerlink.accounting.mapping.common import MappingContext
from src.ledgerlink.accounting.schemas import EntityType, RemoteRecord

ToLocal = Callable[[RemoteRecord, MappingContext], dict[str, Any]]
ToRemote = Callable[[dict[str, Any], MappingContext], dict[str, Any]]


@dataclass(frozen=True)
class EntityBinding:
    """Mapper pair for one entity type.

    references lists the entity types whose links the mappers resolve; the
    orchestrator prefetches exactly those into the LinkIndex.
    """

    entity_type: EntityType
    to_local: ToLocal
    to_remote: ToRemote
    references: tuple[EntityType, ...] = ()


def binding_for(entity_type: EntityType) -> EntityBinding:
    match entity_type:
        case EntityType.ACCOUNT:
            return EntityBinding(
                entity_type, parties.account_to_local, parties.account_to_remote,
                (EntityType.ACCOUNT,),
            )
        case EntityType.CUSTOMER:
            return EntityBinding(entity_type, parties.customer_to_local, parties.customer_to_remote)
        case EntityType.VENDOR:
            return EntityBinding(entity_type, parties.vendor_to_local, parties.vendor_to_remote)
        case EntityType.ITEM:
            return EntityBinding(
                entity_type, parties.item_to_local, parties.item_to_remote,
                (EntityType.ACCOUNT,),
            )
        case EntityType.INVOICE:
            return EntityBinding(
                entity_type, transactions.invoice_to_local, transactions.invoice_to_remote,
                (EntityType.CUSTOMER, EntityType.ITEM),
            )
        case EntityType.PAYMENT:
            return EntityBinding(
                entity_type, transactions.payment_to_local, transactions.payment_to_remote,
                (EntityType.CUSTOMER, EntityType.INVOICE),
            )
        case EntityType.BILL:
            return EntityBinding(
                entity_type, transactions.bill_to_local, transactions.bill_to_remote,
                (EntityType.VENDOR, EntityType.ACCOUNT, EntityType.ITEM),
            )
        case _:
            assert_never(entity_type)


class MappingRegistry:
    """Immutable lookup of EntityBinding by EntityType.

    Args:
        bindings: Bindings keyed by entity type. Tests may pass a subset or
            substitute mappers.
    """

    def __init__(self, bindings: Mapping[EntityType, EntityBinding]) -> None:
        self._bindings = dict(bindings)

    @classmethod
    def default(cls) -> MappingRegistry:
        return cls({entity_type: binding_for(entity_type) for entity_type in EntityType})

    def get(self, entity_type: EntityType) -> EntityBinding:
        try:
            return self._bindings[entity_type]
        except KeyError:
            raise ConfigurationError(f"No mapper registered for {entity_type.value}") from None

    def to_local(self, entity_type: EntityType, record: RemoteRecord, ctx: MappingContext) -> dict[str, Any]:
        return self.get(entity_type).to_local(record, ctx)

    def to_remote(self, entity_type: EntityType, data: dict[str, Any], ctx: MappingContext) -> dict[str, Any]:
        return self.get(entity_type).to_remote(data, ctx)

    def link_types(self, entity_type: EntityType) -> tuple[EntityType, ...]:
        """The type itself plus every type its mappers reference."""
        references = self.get(entity_type).references
        return (entity_type, *(t for t in references if t != entity_type))
