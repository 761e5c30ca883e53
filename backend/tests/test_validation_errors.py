"""
Tests for the validation error parser.

Covers sentinel extraction, known authority codes, path lookup, pattern
classification, deduplication and the generic fallback.
"""
import pytest

from einvoice.core.errors import ValidationRejected
from einvoice.services.validation_errors import (
    DEFAULT_REJECTION_MESSAGE,
    ErrorPattern,
    ValidationErrorParser,
    field_name_from_path,
    normalize_path,
    validation_error_parser,
)

UNIT_CODE_AND_ORIGIN = (
    "ArrayItemNotValid: #/Invoice[0]/InvoiceLine[0] "
    "{PropertyRequired: #/Invoice[0]/InvoiceLine[0]/InvoicedQuantity[0]/unitCode, "
    "PropertyRequired: #/Invoice[0]/InvoiceLine[0]/Item[0]/OriginCountry}"
)


def _rejected(*details, message="Validation failed", code="BadArgument", number="INV001"):
    return {
        "invoiceCodeNumber": number,
        "error": {"code": code, "message": message, "details": list(details)},
    }


class TestPaths:
    def test_normalize_path(self):
        assert normalize_path("#/Invoice[0]/InvoiceLine[1]/unitCode") == "Invoice.InvoiceLine.unitCode"
        assert normalize_path("'Invoice.TaxTotal[0].TaxAmount'") == "Invoice.TaxTotal.TaxAmount"

    def test_field_name_from_path(self):
        assert field_name_from_path("#/Invoice[0]/InvoiceTypeCode") == "Invoice Type Code"
        assert field_name_from_path("") == "Unknown Field"


class TestSentinelExtraction:
    def test_two_property_required_entries_yield_two_errors(self):
        rejected = _rejected({"code": "BadArgument", "message": UNIT_CODE_AND_ORIGIN})

        errors = validation_error_parser.parse(rejected)

        assert len(errors) == 2
        unit_code, origin = errors
        assert unit_code.error_type == "MISSING_UNIT_CODE"
        assert unit_code.guidance[0].startswith('Please add a unit code to your invoice item (e.g., "C62"')
        assert unit_code.property_path == "#/Invoice[0]/InvoiceLine[0]/InvoicedQuantity[0]/unitCode"
        assert origin.error_type == "MISSING_ORIGIN_COUNTRY"
        assert origin.user_message == "The origin country code is missing for item 1"

    def test_string_expected_uses_missing_field_default(self):
        message = "StringExpected: #/Invoice[0]/InvoicePeriod[0]/Description"
        errors = validation_error_parser.parse_detail({"message": message})

        assert len(errors) == 1
        assert errors[0].error_type == "MISSING_FIELD"
        assert errors[0].code == "BadArgument"
        assert errors[0].field == "Description"
        assert errors[0].user_message == 'The field "Description" is required but missing from your invoice'

    def test_property_required_without_pattern(self):
        errors = validation_error_parser.parse_detail(
            "PropertyRequired: #/Invoice[0]/IssueTime"
        )
        assert errors[0].error_type == "PROPERTY_REQUIRED"
        assert errors[0].field == "Issue Time"

    def test_array_item_reported_alone_for_invoice_line(self):
        message = "ArrayItemNotValid: #/Invoice[0]/InvoiceLine[2] {NumberExpected}"
        errors = validation_error_parser.parse_detail({"message": message})

        assert len(errors) == 1
        assert errors[0].error_type == "INVOICE_LINE_ERROR"
        assert errors[0].user_message == "There is an issue with item 3"

    def test_array_item_outside_invoice_line_is_ignored(self):
        message = "ArrayItemNotValid: #/Invoice[0]/AllowanceCharge[0] {NumberExpected}"
        assert validation_error_parser.parse_detail({"message": message}) == []

    def test_array_item_mentioning_quantity_and_unit_code(self):
        message = "ArrayItemNotValid: #/Invoice[0]/InvoiceLine[0] {InvoicedQuantity unitCode invalid}"
        errors = validation_error_parser.parse_detail({"message": message})
        assert errors[0].error_type == "MISSING_UNIT_CODE"


class TestClassification:
    def test_known_code(self):
        errors = validation_error_parser.parse_detail({"code": "DS302", "message": "Duplicate"})

        assert errors[0].error_type == "DS302"
        assert errors[0].field == "Invoice Number"
        assert errors[0].property_path == "Invoice.ID"
        assert errors[0].user_message == "This document has already been submitted to MyInvois"

    def test_known_path_beats_patterns(self):
        errors = validation_error_parser.parse_detail({
            "code": "CF999",
            "message": "Invalid",
            "propertyPath": "Invoice.AccountingCustomerParty[0].Party[0].Contact[0].Telephone",
        })
        assert errors[0].error_type == "INVALID_PHONE_FORMAT"
        assert errors[0].user_message == "Your customer phone number format is incorrect"

    @pytest.mark.parametrize("path, error_type", [
        ("Invoice.Delivery[0].DeliveryParty[0].PostalAddress[0].Country", "MISSING_COUNTRY_CODE"),
        ("Invoice.InvoiceLine[0].TaxTotal[0].TaxSubtotal[0].TaxableAmount", "MISSING_TAXABLE_AMOUNT"),
        ("Invoice.TaxTotal[0].TaxAmount", "MISSING_TAX_AMOUNT"),
        ("Invoice.InvoiceLine[0].TaxTotal[0].TaxSubtotal[0].TaxCategory[0].Percent", "MISSING_TAX_CATEGORY"),
        ("Invoice.InvoiceLine[1].LineExtensionAmount", "MISSING_LINE_AMOUNT"),
        ("Invoice.AccountingCustomerParty[0].Party[0].PartyIdentification[1]", "INVALID_IDENTIFICATION"),
    ])
    def test_pattern_chain(self, path, error_type):
        error = validation_error_parser.classify(path, "message", default_type="VALIDATION_ERROR")
        assert error.error_type == error_type

    def test_item_label_from_line_index(self):
        error = validation_error_parser.classify(
            "Invoice.InvoiceLine[1].LineExtensionAmount", "message", default_type="VALIDATION_ERROR"
        )
        assert error.user_message == "The line amount is missing or invalid for item 2"

    def test_custom_patterns(self):
        parser = ValidationErrorParser(patterns=[
            ErrorPattern(("Note",), "MISSING_NOTE", "note", "Add a payment note", ("Fill in the note",)),
        ])
        error = parser.classify("Invoice.PaymentTerms[0].Note", "message", default_type="VALIDATION_ERROR")
        assert error.error_type == "MISSING_NOTE"
        assert error.code == "BadRequest"

    def test_message_only_detail(self):
        errors = validation_error_parser.parse_detail({"code": "BadStructure", "message": "Document is malformed"})
        assert errors[0].field == "Document Data"
        assert errors[0].error_type == "BadStructure"
        assert errors[0].user_message == "Document is malformed"


class TestParse:
    def test_duplicates_are_collapsed(self):
        detail = {"code": "CF410", "message": "Bad phone"}
        assert len(validation_error_parser.parse(_rejected(detail, detail))) == 1

    def test_error_without_details_is_its_own_detail(self):
        rejected = {"invoiceCodeNumber": "INV001", "error": {"code": "CF321", "message": "Date out of range"}}
        errors = validation_error_parser.parse(rejected)
        assert [error.error_type for error in errors] == ["CF321"]

    def test_nested_error_details(self):
        rejected = {"error": {"error": {"details": [{"code": "CF364", "message": "Bad class"}]}}}
        assert validation_error_parser.parse(rejected)[0].error_type == "CF364"

    def test_empty_payload_falls_back_to_generic_error(self):
        errors = validation_error_parser.parse({"invoiceCodeNumber": "INV001", "error": {}})

        assert len(errors) == 1
        assert errors[0].code == "VALIDATION_ERROR"
        assert errors[0].message == DEFAULT_REJECTION_MESSAGE
        assert errors[0].field == "Document Data"

    def test_never_empty_for_garbage(self):
        assert len(validation_error_parser.parse(None)) == 1
        assert len(validation_error_parser.parse("")) == 1

    def test_to_dict_keys(self):
        error = validation_error_parser.parse(_rejected({"code": "CF410", "message": "Bad phone"}))[0]
        assert set(error.to_dict()) == {
            "code", "errorType", "message", "field", "propertyPath", "userMessage", "guidance",
        }

    def test_to_rejection(self):
        rejection = validation_error_parser.to_rejection(
            _rejected({"code": "BadArgument", "message": UNIT_CODE_AND_ORIGIN}, message="Invalid invoice")
        )

        assert isinstance(rejection, ValidationRejected)
        assert rejection.invoice_number == "INV001"
        assert rejection.message == "Invalid invoice"
        payload = rejection.to_dict()
        assert payload["invoiceNumber"] == "INV001"
        assert len(payload["errors"]) == 2
