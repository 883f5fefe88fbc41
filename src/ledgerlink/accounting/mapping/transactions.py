"""Mappers for transactions: invoices, payments and bills.

Totals are derived so a pushed document maps back to the same local
totals: TotalAmt when the remote sent it, otherwise the sum of line
amounts plus tax. Line order is preserved in both directions.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from src.ledgerlink.accounting.errors import MappingError
from src.ledgerlink.accounting.mapping.common import (
    MappingContext,
    compact,
    date_str,
    money,
    money_amount,
    nested,
    parse_date,
    ref_value,
    remote_number,
    to_decimal,
)
from src.ledgerlink.accounting.schemas import EntityType, RemoteRecord

PAYMENT_METHOD_TO_LOCAL: dict[str, str] = {
    "Cash": "cash",
    "Check": "check",
    "Credit Card": "credit_card",
    "Bank Transfer": "bank_transfer",
    "Wire Transfer": "bank_transfer",
}
PAYMENT_METHOD_FALLBACK = "other"

SALES_LINE = "SalesItemLineDetail"
ACCOUNT_EXPENSE_LINE = "AccountBasedExpenseLineDetail"
ITEM_EXPENSE_LINE = "ItemBasedExpenseLineDetail"


def map_payment_method(remote_name: str | None) -> str:
    return PAYMENT_METHOD_TO_LOCAL.get(remote_name or "", PAYMENT_METHOD_FALLBACK)


def _quantity(value: Any) -> Decimal:
    if value in (None, ""):
        return Decimal("1")
    return Decimal(str(value))


def _format_quantity(quantity: Decimal) -> str:
    """Canonical quantity string: "2" not "2.0", "100" not "1E+2"."""
    return format(quantity.normalize(), "f")


def _tax(doc: dict[str, Any]) -> Decimal:
    return to_decimal(nested(doc, "TxnTaxDetail", "TotalTax"))


def _totals(doc: dict[str, Any], line_amounts: list[Decimal]) -> dict[str, Any]:
    """subtotal/tax/total/balance as local money values."""
    tax = _tax(doc)
    if doc.get("TotalAmt") is not None:
        total = to_decimal(doc.get("TotalAmt"))
    else:
        total = sum(line_amounts, Decimal("0.00")) + tax
    balance = to_decimal(doc["Balance"]) if doc.get("Balance") is not None else total
    return {
        "subtotal": money(total - tax),
        "tax": money(tax),
        "total": money(total),
        "balance": money(balance),
    }


# ── Invoices ────────────────────────────────────────────────────────────────


def derive_invoice_status(total: Decimal, balance: Decimal, due_date: Any, ctx: MappingContext) -> str:
    """paid / partial / overdue / sent, evaluated in that order."""
    if balance == 0 and total > 0:
        return "paid"
    if 0 < balance < total:
        return "partial"
    due = parse_date(due_date)
    if due is not None and due < ctx.as_of.date():
        return "overdue"
    return "sent"


def _invoice_line_to_local(line: dict[str, Any], ctx: MappingContext) -> dict[str, Any]:
    detail = line.get(SALES_LINE) or {}
    quantity = _quantity(detail.get("Qty"))
    unit_price = to_decimal(detail.get("UnitPrice"))
    amount = (
        to_decimal(line["Amount"]) if line.get("Amount") is not None
        else to_decimal(quantity * unit_price)
    )
    return {
        "description": line.get("Description") or nested(detail, "ItemRef", "name") or "",
        "quantity": _format_quantity(quantity),
        "unit_price": money(unit_price),
        "amount": money(amount),
        "item_id": ctx.links.local_id(EntityType.ITEM, ref_value(detail, "ItemRef")),
    }


def invoice_to_local(record: RemoteRecord, ctx: MappingContext) -> dict[str, Any]:
    doc = record.fields
    lines = [
        _invoice_line_to_local(line, ctx)
        for line in doc.get("Line") or []
        if line.get("DetailType") == SALES_LINE
    ]
    totals = _totals(doc, [money_amount(line["amount"]) for line in lines])
    due_date = date_str(doc.get("DueDate") or doc.get("TxnDate"))
    return {
        "customer_id": ctx.links.local_id(EntityType.CUSTOMER, ref_value(doc, "CustomerRef")),
        "number": doc.get("DocNumber"),
        "date": date_str(doc.get("TxnDate")),
        "due_date": due_date,
        "status": derive_invoice_status(
            money_amount(totals["total"]), money_amount(totals["balance"]), due_date, ctx
        ),
        "lines": lines,
        **totals,
        "currency": ref_value(doc, "CurrencyRef"),
        "notes": nested(doc, "CustomerMemo", "value") or "",
    }


def invoice_to_remote(data: dict[str, Any], ctx: MappingContext) -> dict[str, Any]:
    customer_remote_id = ctx.require_remote_id(
        EntityType.CUSTOMER, data.get("customer_id"), "Invoice customer"
    )
    lines = []
    for line in data.get("lines") or []:
        quantity = _quantity(line.get("quantity"))
        unit_price = money_amount(line.get("unit_price"))
        amount = (
            money_amount(line["amount"]) if line.get("amount")
            else to_decimal(quantity * unit_price)
        )
        item_remote_id = ctx.links.remote_id(EntityType.ITEM, line.get("item_id"))
        lines.append({
            "DetailType": SALES_LINE,
            "Amount": remote_number(amount),
            "Description": line.get("description") or "",
            SALES_LINE: compact({
                "Qty": float(quantity),
                "UnitPrice": remote_number(unit_price),
                "ItemRef": {"value": item_remote_id} if item_remote_id else None,
            }),
        })

    tax = money_amount(data.get("tax"))
    return compact({
        "CustomerRef": {"value": customer_remote_id},
        "DocNumber": data.get("number") or None,
        "TxnDate": date_str(data.get("date")),
        "DueDate": date_str(data.get("due_date")),
        "Line": lines,
        "TxnTaxDetail": {"TotalTax": remote_number(tax)} if tax > 0 else None,
        "CurrencyRef": {"value": data["currency"]} if data.get("currency") else None,
        "CustomerMemo": {"value": data["notes"]} if data.get("notes") else None,
    })


# ── Payments ────────────────────────────────────────────────────────────────


def _linked_invoice_remote_id(doc: dict[str, Any]) -> str | None:
    lines = doc.get("Line") or []
    if not lines:
        return None
    linked = lines[0].get("LinkedTxn") or []
    if not linked:
        return None
    txn_id = linked[0].get("TxnId")
    return str(txn_id) if txn_id else None


def payment_to_local(record: RemoteRecord, ctx: MappingContext) -> dict[str, Any]:
    doc = record.fields
    return {
        "customer_id": ctx.links.local_id(EntityType.CUSTOMER, ref_value(doc, "CustomerRef")),
        "invoice_id": ctx.links.local_id(EntityType.INVOICE, _linked_invoice_remote_id(doc)),
        "amount": money(doc.get("TotalAmt")),
        "date": date_str(doc.get("TxnDate")),
        "method": map_payment_method(nested(doc, "PaymentMethodRef", "name")),
        "reference": doc.get("PaymentRefNum") or "",
        "notes": doc.get("PrivateNote") or "",
        "currency": ref_value(doc, "CurrencyRef"),
    }


def payment_to_remote(data: dict[str, Any], ctx: MappingContext) -> dict[str, Any]:
    customer_remote_id = ctx.require_remote_id(
        EntityType.CUSTOMER, data.get("customer_id"), "Payment customer"
    )
    amount = money_amount(data.get("amount"))
    invoice_remote_id = ctx.links.remote_id(EntityType.INVOICE, data.get("invoice_id"))
    return compact({
        "CustomerRef": {"value": customer_remote_id},
        "TotalAmt": remote_number(amount),
        "TxnDate": date_str(data.get("date")),
        "PaymentRefNum": data.get("reference") or None,
        "PrivateNote": data.get("notes") or None,
        "CurrencyRef": {"value": data["currency"]} if data.get("currency") else None,
        "Line": [{
            "Amount": remote_number(amount),
            "LinkedTxn": [{"TxnId": invoice_remote_id, "TxnType": "Invoice"}],
        }] if invoice_remote_id else None,
    })


# ── Bills ───────────────────────────────────────────────────────────────────


def _bill_line_to_local(line: dict[str, Any], ctx: MappingContext) -> dict[str, Any]:
    return {
        "description": line.get("Description") or "",
        "amount": money(line.get("Amount")),
        "account_id": ctx.links.local_id(
            EntityType.ACCOUNT, ref_value(line.get(ACCOUNT_EXPENSE_LINE) or {}, "AccountRef")
        ),
        "item_id": ctx.links.local_id(
            EntityType.ITEM, ref_value(line.get(ITEM_EXPENSE_LINE) or {}, "ItemRef")
        ),
    }


def bill_to_local(record: RemoteRecord, ctx: MappingContext) -> dict[str, Any]:
    doc = record.fields
    lines = [
        _bill_line_to_local(line, ctx)
        for line in doc.get("Line") or []
        if line.get("DetailType") in (ACCOUNT_EXPENSE_LINE, ITEM_EXPENSE_LINE)
    ]
    totals = _totals(doc, [money_amount(line["amount"]) for line in lines])
    return {
        "vendor_id": ctx.links.local_id(EntityType.VENDOR, ref_value(doc, "VendorRef")),
        "number": doc.get("DocNumber"),
        "date": date_str(doc.get("TxnDate")),
        "due_date": date_str(doc.get("DueDate") or doc.get("TxnDate")),
        "status": "paid" if money_amount(totals["balance"]) == 0 else "unpaid",
        "lines": lines,
        **totals,
        "currency": ref_value(doc, "CurrencyRef"),
        "notes": doc.get("PrivateNote") or "",
    }


def bill_to_remote(data: dict[str, Any], ctx: MappingContext) -> dict[str, Any]:
    vendor_remote_id = ctx.require_remote_id(EntityType.VENDOR, data.get("vendor_id"), "Bill vendor")
    lines = []
    for index, line in enumerate(data.get("lines") or [], start=1):
        amount = remote_number(money_amount(line.get("amount")))
        item_remote_id = ctx.links.remote_id(EntityType.ITEM, line.get("item_id"))
        account_remote_id = ctx.links.remote_id(EntityType.ACCOUNT, line.get("account_id"))
        if account_remote_id:
            lines.append({
                "DetailType": ACCOUNT_EXPENSE_LINE,
                "Amount": amount,
                "Description": line.get("description") or "",
                ACCOUNT_EXPENSE_LINE: {"AccountRef": {"value": account_remote_id}},
            })
        elif item_remote_id:
            lines.append({
                "DetailType": ITEM_EXPENSE_LINE,
                "Amount": amount,
                "Description": line.get("description") or "",
                ITEM_EXPENSE_LINE: {"ItemRef": {"value": item_remote_id}},
            })
        else:
            raise MappingError(f"Bill line {index} needs a synced expense account or item")

    tax = money_amount(data.get("tax"))
    return compact({
        "VendorRef": {"value": vendor_remote_id},
        "DocNumber": data.get("number") or None,
        "TxnDate": date_str(data.get("date")),
        "DueDate": date_str(data.get("due_date")),
        "Line": lines,
        "TxnTaxDetail": {"TotalTax": remote_number(tax)} if tax > 0 else None,
        "CurrencyRef": {"value": data["currency"]} if data.get("currency") else None,
        "PrivateNote": data.get("notes") or None,
    })
