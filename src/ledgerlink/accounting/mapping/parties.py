"""Mappers for list entities: accounts, customers, vendors and items.

Each entity type has to_<type>_local(record, ctx) and to_<type>_remote(data, ctx).
Enumerations go through explicit tables with a fallback so an unknown
remote value never fails a sync.
"""

from __future__ import annotations

from typing import Any

from src.ledgerlink.accounting.errors import MappingError
from src.ledgerlink.accounting.mapping.common import (
    MappingContext,
    compact,
    money,
    money_amount,
    nested,
    ref_value,
    remote_number,
)
from src.ledgerlink.accounting.schemas import EntityType, RemoteRecord

# ── Enumeration tables ──────────────────────────────────────────────────────

ACCOUNT_TYPE_TO_LOCAL: dict[str, str] = {
    "Bank": "asset",
    "Other Current Asset": "asset",
    "Fixed Asset": "asset",
    "Other Asset": "asset",
    "Accounts Receivable": "asset",
    "Accounts Payable": "liability",
    "Credit Card": "liability",
    "Long Term Liability": "liability",
    "Other Current Liability": "liability",
    "Equity": "equity",
    "Income": "revenue",
    "Other Income": "revenue",
    "Expense": "expense",
    "Cost of Goods Sold": "expense",
    "Other Expense": "expense",
}
ACCOUNT_TYPE_FALLBACK = "expense"

ACCOUNT_TYPE_TO_REMOTE: dict[str, str] = {
    "asset": "Other Current Asset",
    "liability": "Other Current Liability",
    "equity": "Equity",
    "revenue": "Income",
    "expense": "Expense",
}
ACCOUNT_TYPE_REMOTE_FALLBACK = "Expense"

ITEM_TYPE_TO_LOCAL: dict[str, str] = {
    "Service": "service",
    "Inventory": "inventory",
    "NonInventory": "non_inventory",
    "Group": "group",
    "Category": "category",
}
ITEM_TYPE_FALLBACK = "service"

ITEM_TYPE_TO_REMOTE: dict[str, str] = {
    "service": "Service",
    "inventory": "Inventory",
    "non_inventory": "NonInventory",
}
ITEM_TYPE_REMOTE_FALLBACK = "Service"


def map_account_type(remote_type: str | None) -> str:
    return ACCOUNT_TYPE_TO_LOCAL.get(remote_type or "", ACCOUNT_TYPE_FALLBACK)


def map_account_type_to_remote(local_type: str | None) -> str:
    return ACCOUNT_TYPE_TO_REMOTE.get(local_type or "", ACCOUNT_TYPE_REMOTE_FALLBACK)


def map_party_status(active: Any) -> str:
    # QuickBooks omits Active on active records
    return "inactive" if active is False else "active"


# ── Accounts ────────────────────────────────────────────────────────────────


def account_to_local(record: RemoteRecord, ctx: MappingContext) -> dict[str, Any]:
    doc = record.fields
    return {
        "code": doc.get("AcctNum"),
        "name": doc.get("Name") or "",
        "type": map_account_type(doc.get("AccountType")),
        "sub_type": doc.get("AccountSubType"),
        "description": doc.get("Description") or "",
        "currency": ref_value(doc, "CurrencyRef"),
        "balance": money(doc.get("CurrentBalance")),
        "is_active": doc.get("Active") is not False,
        "parent_account_id": ctx.links.local_id(EntityType.ACCOUNT, ref_value(doc, "ParentRef")),
    }


def account_to_remote(data: dict[str, Any], ctx: MappingContext) -> dict[str, Any]:
    if not data.get("name"):
        raise MappingError("Account name is required")
    parent_remote_id = ctx.links.remote_id(EntityType.ACCOUNT, data.get("parent_account_id"))
    return compact({
        "Name": data["name"],
        "AccountType": map_account_type_to_remote(data.get("type")),
        "AccountSubType": data.get("sub_type") or None,
        "Description": data.get("description") or "",
        "AcctNum": data.get("code") or None,
        "Active": data.get("is_active", True) is not False,
        "SubAccount": True if parent_remote_id else None,
        "ParentRef": {"value": parent_remote_id} if parent_remote_id else None,
    })


# ── Customers & vendors ─────────────────────────────────────────────────────


def _party_to_local(doc: dict[str, Any]) -> dict[str, Any]:
    bill_addr = doc.get("BillAddr") or {}
    return {
        "name": doc.get("DisplayName") or doc.get("FullyQualifiedName") or "",
        "email": nested(doc, "PrimaryEmailAddr", "Address") or "",
        "phone": (
            nested(doc, "PrimaryPhone", "FreeFormNumber")
            or nested(doc, "Mobile", "FreeFormNumber")
            or ""
        ),
        "status": map_party_status(doc.get("Active")),
        "address": {
            "street": bill_addr.get("Line1") or "",
            "city": bill_addr.get("City") or "",
            "state": bill_addr.get("CountrySubDivisionCode") or "",
            "postal_code": bill_addr.get("PostalCode") or "",
            "country": bill_addr.get("Country") or "",
        },
        "currency": ref_value(doc, "CurrencyRef"),
        "balance": money(doc.get("Balance")),
    }


def _party_to_remote(data: dict[str, Any], kind: str) -> dict[str, Any]:
    if not data.get("name"):
        raise MappingError(f"{kind} name is required")
    address = data.get("address") or None
    return compact({
        "DisplayName": data["name"],
        "PrimaryEmailAddr": {"Address": data["email"]} if data.get("email") else None,
        "PrimaryPhone": {"FreeFormNumber": data["phone"]} if data.get("phone") else None,
        "BillAddr": {
            "Line1": address.get("street") or "",
            "City": address.get("city") or "",
            "CountrySubDivisionCode": address.get("state") or "",
            "PostalCode": address.get("postal_code") or "",
            "Country": address.get("country") or "",
        } if address else None,
        "Active": data.get("status", "active") != "inactive",
    })


def customer_to_local(record: RemoteRecord, ctx: MappingContext) -> dict[str, Any]:
    local = _party_to_local(record.fields)
    local["notes"] = record.fields.get("Notes") or ""
    return local


def customer_to_remote(data: dict[str, Any], ctx: MappingContext) -> dict[str, Any]:
    payload = _party_to_remote(data, "Customer")
    if data.get("notes"):
        payload["Notes"] = data["notes"]
    return payload


def vendor_to_local(record: RemoteRecord, ctx: MappingContext) -> dict[str, Any]:
    return _party_to_local(record.fields)


def vendor_to_remote(data: dict[str, Any], ctx: MappingContext) -> dict[str, Any]:
    return _party_to_remote(data, "Vendor")


# ── Items ───────────────────────────────────────────────────────────────────


def item_to_local(record: RemoteRecord, ctx: MappingContext) -> dict[str, Any]:
    doc = record.fields
    return {
        "name": doc.get("Name") or "",
        "type": ITEM_TYPE_TO_LOCAL.get(doc.get("Type") or "", ITEM_TYPE_FALLBACK),
        "description": doc.get("Description") or "",
        "unit_price": money(doc.get("UnitPrice")),
        "is_active": doc.get("Active") is not False,
        "income_account_id": ctx.links.local_id(EntityType.ACCOUNT, ref_value(doc, "IncomeAccountRef")),
        "expense_account_id": ctx.links.local_id(EntityType.ACCOUNT, ref_value(doc, "ExpenseAccountRef")),
    }


def item_to_remote(data: dict[str, Any], ctx: MappingContext) -> dict[str, Any]:
    if not data.get("name"):
        raise MappingError("Item name is required")
    income_account = ctx.require_remote_id(
        EntityType.ACCOUNT, data.get("income_account_id"), "Item income account"
    )
    expense_account = ctx.links.remote_id(EntityType.ACCOUNT, data.get("expense_account_id"))
    return compact({
        "Name": data["name"],
        "Type": ITEM_TYPE_TO_REMOTE.get(data.get("type") or "", ITEM_TYPE_REMOTE_FALLBACK),
        "Description": data.get("description") or None,
        "UnitPrice": remote_number(money_amount(data.get("unit_price"))),
        "Active": data.get("is_active", True) is not False,
        "IncomeAccountRef": {"value": income_account},
        "ExpenseAccountRef": {"value": expense_account} if expense_account else None,
    })
