"""
UBL JSON building blocks.

The authority's JSON flavour of UBL wraps every scalar in a one-element
array: ``{"ID": [{"_": "INV001"}]}``. Attributes such as ``currencyID`` or
``schemeID`` sit next to the ``_`` value. Aggregates are one-element arrays
of objects.

Leaf constructors follow two disjoint rules:

- ``amount``/``number``: numeric leaves. Non-numeric input returns None,
  so the key is dropped by ``prune``.
- ``text``: every other scalar, emitted as a string. Missing input becomes
  an explicit empty string and the key is never dropped.
"""
import math
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

from einvoice.core.errors import MappingError

Node = list[dict[str, Any]]
Number = Union[int, float]

INVOICE_NAMESPACE = "urn:oasis:names:specification:ubl:schema:xsd:Invoice-2"
AGGREGATE_NAMESPACE = "urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2"
BASIC_NAMESPACE = "urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2"

# Sections every mapped invoice must carry, even when their leaves are empty.
REQUIRED_INVOICE_SECTIONS = (
    "ID",
    "IssueDate",
    "IssueTime",
    "InvoiceTypeCode",
    "DocumentCurrencyCode",
    "AccountingSupplierParty",
    "AccountingCustomerParty",
    "TaxTotal",
    "LegalMonetaryTotal",
    "InvoiceLine",
)


def to_number(value: Any) -> Optional[Number]:
    """Parse ``value`` as a finite number, or return None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, Decimal):
        return float(value) if value.is_finite() else None
    if isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            return None
        try:
            parsed = Decimal(candidate)
        except InvalidOperation:
            return None
        if not parsed.is_finite():
            return None
        return float(parsed)
    return None


def to_text(value: Any) -> str:
    """Render a scalar the way a spreadsheet cell reads."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def text(value: Any, **attributes: Any) -> Node:
    """Wrap a non-currency scalar. Never returns None."""
    leaf = {"_": "" if value is None or value == "" else to_text(value)}
    leaf.update(attributes)
    return [leaf]


def amount(value: Any, currency: Optional[str]) -> Optional[Node]:
    """Wrap a currency amount, or None when ``value`` is not numeric."""
    number_value = to_number(value)
    if number_value is None:
        return None
    return [{"_": number_value, "currencyID": currency or None}]


def number(value: Any) -> Optional[Node]:
    number_value = to_number(value)
    if number_value is None:
        return None
    return [{"_": number_value}]


def flag(value: Any) -> Node:
    if isinstance(value, str):
        return [{"_": value.strip().lower() == "true"}]
    return [{"_": value is True or value == 1}]


def aggregate(**children: Any) -> Node:
    """One-element aggregate node."""
    return [children]


def prune(tree: Any) -> Any:
    """Return a copy of ``tree`` without None values at any depth."""
    if isinstance(tree, dict):
        return {key: prune(value) for key, value in tree.items() if value is not None}
    if isinstance(tree, list):
        return [prune(item) for item in tree if item is not None]
    return tree


def validate_invoice(document: dict) -> None:
    """Check a pruned canonical document carries every required section."""
    try:
        invoice = document["Invoice"][0]
    except (KeyError, IndexError, TypeError):
        raise MappingError("Canonical document has no Invoice node")

    missing = [section for section in REQUIRED_INVOICE_SECTIONS if section not in invoice]
    if missing:
        raise MappingError(
            f"Canonical document is missing required sections: {', '.join(missing)}",
            details={"missing": missing},
        )
