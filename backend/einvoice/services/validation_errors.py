"""
Validation Error Parser

Translates the authority's rejection payloads into field-level guidance.

A rejected document looks like::

    {"invoiceCodeNumber": "INV001",
     "error": {"code": "BadArgument", "message": "...",
               "details": [{"code": "...", "message": "...", "propertyPath": "..."}]}}

A single ``message`` can pack several schema violations behind sentinel
tokens (``PropertyRequired:``, ``StringExpected:``, ``ArrayItemNotValid:``).
Each one becomes its own ValidationError. Classification runs in order:

1. Known authority codes (CF410, DS302, ...) from a static catalog
2. Exact lookup of well-known property paths
3. An ordered chain of ErrorPattern keyword matchers (first match wins)
4. A generic "field is missing" entry built from the last path segment

``parse`` never returns an empty list.
"""
import re
import logging
from dataclasses import dataclass, field as dataclass_field
from typing import Any, Optional

from einvoice.core.errors import ValidationRejected

logger = logging.getLogger(__name__)

STRING_EXPECTED = re.compile(r"StringExpected:\s*([^}\n]+)")
PROPERTY_REQUIRED = re.compile(r"PropertyRequired:\s*([^,}\n]+)")
ARRAY_ITEM_NOT_VALID = re.compile(r"ArrayItemNotValid:\s*([^{}\n]+)")
SENTINELS = ("StringExpected", "PropertyRequired", "ArrayItemNotValid")

INVOICE_LINE_INDEX = re.compile(r"InvoiceLine\[(\d+)\]")
ARRAY_INDEX = re.compile(r"\[\d+\]")
CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

DEFAULT_REJECTION_MESSAGE = "Document validation failed. Please review the document and correct all errors."

GENERIC_GUIDANCE = [
    "Review all document fields for accuracy",
    "Ensure all required fields are completed",
    "Check data formats match MyInvois requirements",
]

# Standard authority error codes per classification
STANDARD_CODES = {
    "VALIDATION_ERROR": "BadRequest",
    "MISSING_COUNTRY_CODE": "BadArgument",
    "MISSING_ORIGIN_COUNTRY": "BadArgument",
    "INVALID_PHONE_FORMAT": "BadArgument",
    "INVALID_IDENTIFICATION": "BadArgument",
    "PROPERTY_REQUIRED": "BadArgument",
    "MISSING_FIELD": "BadArgument",
    "MISSING_UNIT_CODE": "BadArgument",
    "MISSING_QUANTITY": "BadArgument",
    "MISSING_LINE_AMOUNT": "BadArgument",
    "MISSING_TAX_AMOUNT": "BadArgument",
    "MISSING_TAXABLE_AMOUNT": "BadArgument",
    "MISSING_TAX_PERCENT": "BadArgument",
    "MISSING_TAX_CATEGORY": "BadArgument",
    "INVOICE_LINE_ERROR": "BadRequest",
    "ARRAY_ITEM_NOT_VALID": "BadRequest",
}


@dataclass
class ValidationError:
    """One actionable violation reported by the authority."""
    code: str
    message: str
    field: str
    property_path: str
    user_message: str
    guidance: list = dataclass_field(default_factory=list)
    error_type: str = "VALIDATION_ERROR"

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "errorType": self.error_type,
            "message": self.message,
            "field": self.field,
            "propertyPath": self.property_path,
            "userMessage": self.user_message,
            "guidance": list(self.guidance),
        }

    def _key(self) -> tuple:
        return (self.code, self.error_type, self.property_path, self.user_message)


@dataclass(frozen=True)
class KnownError:
    title: str
    field: str
    user_message: str
    guidance: tuple
    field_path: str


KNOWN_ERROR_CODES = {
    "CF410": KnownError(
        "Invalid Phone Number Format", "Supplier Phone Number",
        "The supplier phone number format is invalid",
        (
            "Ensure the phone number includes the country code (e.g., +60)",
            "Phone number must be at least 8 characters long",
            "Remove any spaces, dashes, or special characters except +",
            "Example: +60123456789 or 60123456789",
        ),
        "Invoice.AccountingSupplierParty.Party.Contact.Telephone",
    ),
    "CF414": KnownError(
        "Phone Number Length Validation", "Supplier Phone Number",
        "The supplier phone number is too short",
        (
            "Phone number must be at least 8 characters long",
            "Include country code (+60 for Malaysia)",
            "Ensure all digits are present",
            "Example: +60123456789",
        ),
        "Invoice.AccountingSupplierParty.Party.Contact.Telephone",
    ),
    "CF415": KnownError(
        "Buyer Phone Number Validation", "Buyer Phone Number",
        "The buyer phone number format is invalid",
        (
            "Buyer phone number must be at least 8 characters long",
            "Include country code (+60 for Malaysia)",
            "Remove spaces, dashes, or special characters except +",
            "Example: +60123456789",
        ),
        "Invoice.AccountingCustomerParty.Party.Contact.Telephone",
    ),
    "DS302": KnownError(
        "Duplicate Document Submission", "Invoice Number",
        "This document has already been submitted to MyInvois",
        (
            "Check the document status in the MyInvois portal",
            "Use a different invoice number if creating a new document",
            "If this is a correction, cancel the original document first",
        ),
        "Invoice.ID",
    ),
    "CF321": KnownError(
        "Invalid Document Date", "Issue Date",
        "The document issue date is invalid or outside allowed range",
        (
            "Documents must be submitted within 7 days of issue date",
            "Ensure the date format is correct (YYYY-MM-DD)",
            "Check that the issue date is not in the future",
        ),
        "Invoice.IssueDate",
    ),
    "CF401": KnownError(
        "Tax Calculation Error", "Tax Amount",
        "There is an error in the tax calculations",
        (
            "Verify all tax rates are correct",
            "Check that tax amounts match the calculated values",
            "Ensure tax-exempt items are properly marked",
            "Review the total tax amount calculation",
        ),
        "Invoice.TaxTotal",
    ),
    "CF402": KnownError(
        "Currency Validation Error", "Currency Code",
        "The currency information is invalid",
        (
            "Use valid ISO currency codes (e.g., MYR, USD, SGD)",
            "Ensure exchange rates are current and accurate",
            "Check that all amounts use the same currency",
        ),
        "Invoice.DocumentCurrencyCode",
    ),
    "CF403": KnownError(
        "Invalid Tax Code", "Tax Code",
        "The tax code used is invalid or not recognized",
        (
            "Use only valid Malaysian tax codes",
            "Ensure tax codes match the item categories",
            "Verify tax-exempt codes are used correctly",
        ),
        "Invoice.InvoiceLine.TaxTotal.TaxSubtotal.TaxCategory.TaxScheme",
    ),
    "CF404": KnownError(
        "Invalid Identification Information", "TIN/Registration Number",
        "The identification information is invalid",
        (
            "Verify TIN numbers are correct and active",
            "Check registration numbers format",
            "Validate both supplier and buyer information",
        ),
        "Invoice.AccountingSupplierParty.Party.PartyIdentification",
    ),
    "CF405": KnownError(
        "Invalid Party Information", "Company Information",
        "The company or party information is invalid",
        (
            "Check company name spelling and format",
            "Verify address information is complete",
            "Ensure contact details are valid",
        ),
        "Invoice.AccountingSupplierParty.Party",
    ),
    "CF364": KnownError(
        "Invalid Item Classification", "Item Classification Code",
        "One or more item classifications are invalid",
        (
            "Use valid classification codes from the MyInvois code list",
            "Ensure all items have proper classifications",
            "Verify classification codes match item descriptions",
        ),
        "Invoice.InvoiceLine.Item.CommodityClassification",
    ),
}


COUNTRY_GUIDANCE = (
    'Use ISO 3166 country codes (e.g., "MYS" or "MY" for Malaysia)',
    "Check supplier, buyer, and delivery address fields",
)
PHONE_GUIDANCE = (
    'Include the country code, for example "+60123456789"',
    "Phone number must be at least 8 characters long",
    "Remove spaces, dashes, or special characters except +",
)
IDENTIFICATION_GUIDANCE = (
    "Verify the TIN and registration numbers are correct",
    "Make sure each identification has its scheme (TIN, BRN, NRIC, PASSPORT, ARMY)",
)

# Exact matches on normalized property paths
KNOWN_PATHS = {
    "Invoice.AccountingSupplierParty.Party.PostalAddress.Country.IdentificationCode": (
        "MISSING_COUNTRY_CODE", "country code",
        "Your supplier address is missing a country code", COUNTRY_GUIDANCE,
    ),
    "Invoice.AccountingCustomerParty.Party.PostalAddress.Country.IdentificationCode": (
        "MISSING_COUNTRY_CODE", "country code",
        "Your customer address is missing a country code", COUNTRY_GUIDANCE,
    ),
    "Invoice.Delivery.DeliveryParty.PostalAddress.Country.IdentificationCode": (
        "MISSING_COUNTRY_CODE", "country code",
        "Your delivery address is missing a country code", COUNTRY_GUIDANCE,
    ),
    "Invoice.AccountingSupplierParty.Party.Contact.Telephone": (
        "INVALID_PHONE_FORMAT", "phone number",
        "Your supplier phone number format is incorrect", PHONE_GUIDANCE,
    ),
    "Invoice.AccountingCustomerParty.Party.Contact.Telephone": (
        "INVALID_PHONE_FORMAT", "phone number",
        "Your customer phone number format is incorrect", PHONE_GUIDANCE,
    ),
    "Invoice.AccountingSupplierParty.Party.PartyIdentification.ID": (
        "INVALID_IDENTIFICATION", "identification number",
        "There is an issue with your supplier identification number", IDENTIFICATION_GUIDANCE,
    ),
    "Invoice.AccountingCustomerParty.Party.PartyIdentification.ID": (
        "INVALID_IDENTIFICATION", "identification number",
        "There is an issue with your customer identification number", IDENTIFICATION_GUIDANCE,
    ),
}


@dataclass(frozen=True)
class ErrorPattern:
    """
    Keyword matcher over a property path.

    Matches when every keyword occurs in the path. ``user_message`` may hold
    an ``{item}`` placeholder, filled with the affected invoice line.
    """
    keywords: tuple
    error_type: str
    field: str
    user_message: str
    guidance: tuple

    def matches(self, path: str) -> bool:
        return all(keyword in path for keyword in self.keywords)


ERROR_PATTERNS = [
    ErrorPattern(
        ("unitCode",), "MISSING_UNIT_CODE", "unit code",
        "The unit code is missing from one of your invoice items",
        (
            'Please add a unit code to your invoice item (e.g., "C62" for pieces, "KGM" for kilograms).',
            "Common unit codes: C62 (pieces), KGM (kilograms), MTR (meters), LTR (liters).",
            "The unit code must match the quantity type you are selling.",
        ),
    ),
    ErrorPattern(
        ("OriginCountry",), "MISSING_ORIGIN_COUNTRY", "origin country code",
        "The origin country code is missing for {item}",
        (
            'Add the origin country of the item, e.g. "MYS" for Malaysia',
            "Use ISO 3166 country codes",
        ),
    ),
    ErrorPattern(
        ("AccountingSupplierParty", "Country"), "MISSING_COUNTRY_CODE", "country code",
        "Your supplier address is missing a country code", COUNTRY_GUIDANCE,
    ),
    ErrorPattern(
        ("AccountingCustomerParty", "Country"), "MISSING_COUNTRY_CODE", "country code",
        "Your customer address is missing a country code", COUNTRY_GUIDANCE,
    ),
    ErrorPattern(
        ("Delivery", "Country"), "MISSING_COUNTRY_CODE", "country code",
        "Your delivery address is missing a country code", COUNTRY_GUIDANCE,
    ),
    ErrorPattern(
        ("Country",), "MISSING_COUNTRY_CODE", "country code",
        "A country code is missing from one of your addresses", COUNTRY_GUIDANCE,
    ),
    ErrorPattern(
        ("AccountingSupplierParty", "Contact.Telephone"), "INVALID_PHONE_FORMAT", "phone number",
        "Your supplier phone number format is incorrect", PHONE_GUIDANCE,
    ),
    ErrorPattern(
        ("AccountingCustomerParty", "Contact.Telephone"), "INVALID_PHONE_FORMAT", "phone number",
        "Your customer phone number format is incorrect", PHONE_GUIDANCE,
    ),
    ErrorPattern(
        ("Contact.Telephone",), "INVALID_PHONE_FORMAT", "phone number",
        "A phone number format is incorrect", PHONE_GUIDANCE,
    ),
    ErrorPattern(
        ("AccountingSupplierParty", "PartyIdentification"), "INVALID_IDENTIFICATION",
        "identification number",
        "There is an issue with your supplier identification number", IDENTIFICATION_GUIDANCE,
    ),
    ErrorPattern(
        ("PartyIdentification",), "INVALID_IDENTIFICATION", "identification number",
        "There is an issue with an identification number", IDENTIFICATION_GUIDANCE,
    ),
    ErrorPattern(
        ("InvoicedQuantity",), "MISSING_QUANTITY", "quantity",
        "The quantity information is missing or invalid for {item}",
        (
            "Please enter a valid quantity for your invoice item.",
            "The quantity must be a positive number.",
            "Make sure both the quantity value and unit code are provided.",
        ),
    ),
    ErrorPattern(
        ("LineExtensionAmount",), "MISSING_LINE_AMOUNT", "line amount",
        "The line amount is missing or invalid for {item}",
        (
            "Please enter a valid line amount for your invoice item.",
            "The line amount should be the total before tax for this item.",
        ),
    ),
    ErrorPattern(
        ("TaxableAmount",), "MISSING_TAXABLE_AMOUNT", "taxable amount",
        "The taxable amount is missing or invalid",
        (
            "Enter the amount the tax is calculated on.",
            "Make sure the amount is a number with proper decimal formatting.",
        ),
    ),
    ErrorPattern(
        ("TaxAmount",), "MISSING_TAX_AMOUNT", "tax amount",
        "The tax amount is missing or invalid",
        (
            "Please enter a valid tax amount.",
            "The tax amount should match the calculated tax for your items.",
        ),
    ),
    ErrorPattern(
        ("TaxCategory",), "MISSING_TAX_CATEGORY", "tax category",
        "Tax category information is missing from your invoice",
        (
            "Ensure all tax categories are properly specified",
            "Verify tax scheme and category codes are valid",
        ),
    ),
    ErrorPattern(
        ("Percent",), "MISSING_TAX_PERCENT", "tax percentage",
        "The tax percentage is missing or invalid",
        ("Enter the tax rate as a number, e.g. 6 or 8",),
    ),
]


def normalize_path(path: str) -> str:
    """``#/Invoice[0]/InvoiceLine[1]/unitCode`` -> ``Invoice.InvoiceLine.unitCode``"""
    path = path.strip().strip("\"'").strip()
    if path.startswith("#"):
        path = path[1:]
    path = ARRAY_INDEX.sub("", path)
    parts = [part for part in re.split(r"[/.]", path) if part]
    return ".".join(parts)


def field_name_from_path(path: str) -> str:
    """Readable name from the last path segment (``InvoiceTypeCode`` -> ``Invoice Type Code``)."""
    normalized = normalize_path(path)
    last = normalized.rsplit(".", 1)[-1] if normalized else ""
    return CAMEL_BOUNDARY.sub(" ", last).strip() or "Unknown Field"


def _item_label(raw_path: str) -> str:
    match = INVOICE_LINE_INDEX.search(raw_path)
    if match:
        return f"item {int(match.group(1)) + 1}"
    return "one of your invoice items"


class ValidationErrorParser:
    """Parses rejected documents into ValidationError lists."""

    def __init__(self, patterns: Optional[list] = None):
        self.patterns = patterns if patterns is not None else ERROR_PATTERNS

    def parse(self, rejected_document: Any) -> list:
        """
        Parse one entry of ``rejectedDocuments`` (or a bare error payload).

        Always returns at least one ValidationError.
        """
        error = self._error_of(rejected_document)
        errors = []

        for detail in self._details_of(rejected_document, error):
            errors.extend(self.parse_detail(detail))

        if not errors and error:
            errors.extend(self.parse_detail(error))

        unique = []
        seen = set()
        for item in errors:
            if item._key() in seen:
                continue
            seen.add(item._key())
            unique.append(item)

        if not unique:
            message = (error or {}).get("message") if isinstance(error, dict) else None
            unique.append(ValidationError(
                code="VALIDATION_ERROR",
                message=message or DEFAULT_REJECTION_MESSAGE,
                field="Document Data",
                property_path="",
                user_message=message or "The document contains validation errors",
                guidance=list(GENERIC_GUIDANCE),
            ))
        return unique

    def to_rejection(self, rejected_document: Any) -> ValidationRejected:
        """Wrap the parsed errors of one rejected document."""
        error = self._error_of(rejected_document)
        message = error.get("message") if isinstance(error, dict) else None
        invoice_number = None
        if isinstance(rejected_document, dict):
            invoice_number = rejected_document.get("invoiceCodeNumber") or rejected_document.get("codeNumber")
        return ValidationRejected(
            message=message or DEFAULT_REJECTION_MESSAGE,
            errors=self.parse(rejected_document),
            invoice_number=invoice_number,
        )

    def parse_detail(self, detail: Any) -> list:
        """Parse one detail entry, expanding sentinel-packed messages."""
        if isinstance(detail, str):
            detail = {"message": detail}
        if not isinstance(detail, dict):
            return []

        message = str(detail.get("message") or detail.get("error") or "")
        code = detail.get("code") or detail.get("errorCode")
        path = detail.get("propertyPath") or detail.get("target") or detail.get("field") or ""

        if any(sentinel in message for sentinel in SENTINELS):
            return self.extract_nested(message)

        if code in KNOWN_ERROR_CODES:
            known = KNOWN_ERROR_CODES[code]
            return [ValidationError(
                code=code,
                message=message or known.title,
                field=known.field,
                property_path=path or known.field_path,
                user_message=known.user_message,
                guidance=list(known.guidance),
                error_type=code,
            )]

        if not message and not path:
            return []

        if path:
            return [self.classify(path, message, default_type=code or "VALIDATION_ERROR")]

        return [ValidationError(
            code=STANDARD_CODES.get(code, "BadRequest") if code else "BadRequest",
            message=message,
            field="Document Data",
            property_path="",
            user_message=message,
            guidance=list(GENERIC_GUIDANCE),
            error_type=code or "VALIDATION_ERROR",
        )]

    def extract_nested(self, message: str) -> list:
        """Split a sentinel-packed message into one error per violation."""
        errors = []
        for match in STRING_EXPECTED.finditer(message):
            errors.append(self.classify(match.group(1), message, default_type="MISSING_FIELD"))
        for match in PROPERTY_REQUIRED.finditer(message):
            errors.append(self.classify(match.group(1), message, default_type="PROPERTY_REQUIRED"))

        reported = [normalize_path(e.property_path) for e in errors]
        for match in ARRAY_ITEM_NOT_VALID.finditer(message):
            container = normalize_path(match.group(1))
            if "InvoiceLine" not in container:
                continue
            # Container entries only matter when no inner violation was reported
            if any(path.startswith(container) for path in reported):
                continue
            errors.append(self._invoice_line_error(match.group(1).strip(), message))
            reported.append(container)

        return errors

    def classify(self, raw_path: str, message: str, default_type: str) -> ValidationError:
        """Classify one property path into a ValidationError."""
        raw_path = raw_path.strip()
        path = normalize_path(raw_path)

        if path in KNOWN_PATHS:
            error_type, field, user_message, guidance = KNOWN_PATHS[path]
            return self._build(error_type, message, field, raw_path, user_message, guidance)

        for pattern in self.patterns:
            if pattern.matches(path):
                user_message = pattern.user_message.format(item=_item_label(raw_path))
                return self._build(
                    pattern.error_type, message, pattern.field, raw_path, user_message, pattern.guidance
                )

        field = field_name_from_path(raw_path)
        return self._build(
            default_type,
            message,
            field,
            raw_path,
            f'The field "{field}" is required but missing from your invoice',
            (
                f'Please provide a value for the "{field}" field',
                "Check your source file for empty required fields",
                "Ensure all mandatory information is complete",
            ),
        )

    def _invoice_line_error(self, raw_path: str, message: str) -> ValidationError:
        if "InvoicedQuantity" in message and "unitCode" in message:
            pattern = ERROR_PATTERNS[0]
            return self._build(
                pattern.error_type, message, pattern.field, raw_path, pattern.user_message, pattern.guidance
            )
        return self._build(
            "INVOICE_LINE_ERROR",
            message,
            "invoice line",
            raw_path,
            f"There is an issue with {_item_label(raw_path)}",
            (
                "Check all invoice line items for missing or invalid data",
                "Ensure all required fields are filled in each line item",
                "Verify unit codes, quantities, and prices are correct",
            ),
        )

    def _build(self, error_type, message, field, raw_path, user_message, guidance) -> ValidationError:
        return ValidationError(
            code=STANDARD_CODES.get(error_type, "BadRequest"),
            message=message,
            field=field,
            property_path=raw_path,
            user_message=user_message,
            guidance=list(guidance),
            error_type=error_type,
        )

    def _error_of(self, rejected_document: Any) -> Any:
        if isinstance(rejected_document, dict) and "error" in rejected_document:
            return rejected_document["error"]
        return rejected_document

    def _details_of(self, rejected_document: Any, error: Any) -> list:
        candidates = []
        if isinstance(error, dict):
            candidates.append(error.get("details"))
            nested = error.get("error")
            if isinstance(nested, dict):
                candidates.append(nested.get("details"))
        if isinstance(rejected_document, dict) and rejected_document is not error:
            candidates.append(rejected_document.get("details"))

        for details in candidates:
            if not details:
                continue
            return details if isinstance(details, list) else [details]
        return []


validation_error_parser = ValidationErrorParser()
