"""
Internal Document Schemas

Pydantic models for the normalized invoice document handed over by the
spreadsheet reader. Keys arrive in camelCase (``invoiceNo``,
``documentCurrencyCode``) and are exposed in snake_case. Scalar values are
kept loosely typed because spreadsheet cells may hold text where numbers are
expected; the mapper decides how each value is emitted.
"""
from decimal import Decimal
from typing import Optional, Union

from pydantic import AliasChoices, BaseModel, Field
from pydantic.alias_generators import to_camel

Scalar = Optional[Union[str, int, float, Decimal]]
Flag = Optional[Union[bool, str, int]]


class DocumentModel(BaseModel):
    """Base for every section of the internal document."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "ignore"
        frozen = True


class PartyIdentification(DocumentModel):
    scheme_id: Optional[str] = None
    id: Scalar = None


class Address(DocumentModel):
    line: Scalar = None
    city: Scalar = None
    postcode: Scalar = None
    state: Scalar = None
    country: Optional[str] = None


class Contact(DocumentModel):
    phone: Scalar = None
    email: Optional[str] = None


class Party(DocumentModel):
    """Supplier or buyer."""
    name: Optional[str] = None
    identifications: list[PartyIdentification] = Field(default_factory=list)
    address: Address = Field(default_factory=Address)
    contact: Contact = Field(default_factory=Contact)
    industry_classification_code: Scalar = None
    industry_name: Optional[str] = None
    additional_account_id: Scalar = Field(
        None, validation_alias=AliasChoices("additionalAccountID", "additionalAccountId", "additional_account_id")
    )
    scheme_agency_name: Optional[str] = None


class AllowanceCharge(DocumentModel):
    charge_indicator: Flag = Field(
        None, validation_alias=AliasChoices("chargeIndicator", "indicator", "charge_indicator")
    )
    reason: Optional[str] = None
    multiplier_factor_numeric: Scalar = None
    amount: Scalar = None


class Shipment(DocumentModel):
    id: Scalar = None
    freight_allowance_charge: AllowanceCharge = Field(default_factory=AllowanceCharge)


class Delivery(DocumentModel):
    name: Optional[str] = None
    identifications: list[PartyIdentification] = Field(default_factory=list)
    address: Optional[Address] = None
    shipment: Optional[Shipment] = None


class InvoicePeriod(DocumentModel):
    start_date: Scalar = None
    end_date: Scalar = None
    description: Optional[str] = None


class DocumentReference(DocumentModel):
    id: Scalar = None
    type: Optional[str] = None
    description: Optional[str] = None


class DocumentReferences(DocumentModel):
    billing_reference: Scalar = None
    billing_reference_type: Optional[str] = None
    billing_reference_uuid: Optional[str] = None
    additional_refs: list[DocumentReference] = Field(default_factory=list)


class Header(DocumentModel):
    invoice_no: Scalar = None
    invoice_type: Scalar = None
    document_currency_code: Optional[str] = None
    tax_currency_code: Optional[str] = None
    issue_date: Scalar = None
    issue_time: Scalar = None
    exchange_rate: Scalar = None
    invoice_period: InvoicePeriod = Field(default_factory=InvoicePeriod)
    document_reference: DocumentReferences = Field(default_factory=DocumentReferences)


class TaxScheme(DocumentModel):
    id: Optional[str] = None
    scheme_id: Optional[str] = None
    scheme_agency_id: Optional[str] = None


class TaxCategory(DocumentModel):
    id: Scalar = None
    percent: Scalar = None
    exemption_reason: Optional[str] = None
    tax_scheme: Optional[TaxScheme] = None


class TaxSubtotal(DocumentModel):
    taxable_amount: Scalar = None
    tax_amount: Scalar = None
    tax_category: TaxCategory = Field(default_factory=TaxCategory)


class TaxTotal(DocumentModel):
    tax_amount: Scalar = None
    tax_subtotal: list[TaxSubtotal] = Field(default_factory=list)


class Classification(DocumentModel):
    code: Scalar = None
    type: Optional[str] = None


class ItemDetail(DocumentModel):
    description: Optional[str] = None
    classification: Classification = Field(default_factory=Classification)
    ptc_code: Scalar = None
    origin_country: Optional[str] = None


class Price(DocumentModel):
    amount: Scalar = None
    extension: Scalar = None


class LineItem(DocumentModel):
    line_id: Scalar = None
    quantity: Scalar = None
    unit_code: Optional[str] = None
    line_extension_amount: Scalar = None
    allowance_charges: list[AllowanceCharge] = Field(default_factory=list)
    tax_total: Optional[TaxTotal] = None
    item: ItemDetail = Field(default_factory=ItemDetail)
    price: Price = Field(default_factory=Price)


class MonetaryTotals(DocumentModel):
    line_extension_amount: Scalar = None
    tax_exclusive_amount: Scalar = None
    tax_inclusive_amount: Scalar = None
    allowance_total_amount: Scalar = None
    charge_total_amount: Scalar = None
    payable_rounding_amount: Scalar = None
    payable_amount: Scalar = None


class Summary(DocumentModel):
    tax_total: Optional[TaxTotal] = None
    amounts: MonetaryTotals = Field(default_factory=MonetaryTotals)


class PrepaidPayment(DocumentModel):
    id: Scalar = None
    amount: Scalar = None
    date: Scalar = None
    time: Scalar = None


class Payment(DocumentModel):
    payment_means_code: Scalar = None
    payee_financial_account: Scalar = None
    payment_terms: Optional[str] = None
    prepaid_payment: PrepaidPayment = Field(default_factory=PrepaidPayment)


class InvoiceDocument(DocumentModel):
    """One invoice-like record as produced by the spreadsheet reader."""
    header: Header = Field(default_factory=Header)
    supplier: Party = Field(default_factory=Party)
    buyer: Party = Field(default_factory=Party)
    delivery: Optional[Delivery] = None
    items: list[LineItem] = Field(default_factory=list)
    summary: Summary = Field(default_factory=Summary)
    payment: Payment = Field(default_factory=Payment)
    allowance_charge: list[AllowanceCharge] = Field(default_factory=list)
