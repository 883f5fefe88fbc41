"""Entity mapping layer -- pure translation between local and remote schemas.

Provides per-type mapper pairs (to_local / to_remote) for accounts,
customers, vendors, items, invoices, payments and bills, the shared money
and link-index helpers, and MappingRegistry for dispatch by EntityType.
"""

from src.ledgerlink.accounting.mapping.common import (
    LinkIndex,
    MappingContext,
    minor_units,
    money,
    money_amount,
)
from src.ledgerlink.accounting.mapping.registry import (
    EntityBinding,
    MappingRegistry,
    binding_for,
)

__all__ = [
    "EntityBinding",
    "LinkIndex",
    "MappingContext",
    "MappingRegistry",
    "binding_for",
    "minor_units",
    "money",
    "money_amount",
]
