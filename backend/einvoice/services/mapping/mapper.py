"""
Internal document to canonical UBL JSON mapping.

Builds the authority's canonical invoice tree section by section from an
``InvoiceDocument``. The mapping is pure: the same input always yields the
same tree, and the output never contains nulls.
"""
import logging
from typing import Any, Optional, Sequence, Union

from pydantic import ValidationError

from einvoice.core.errors import MappingError
from einvoice.schemas.invoice import (
    Address,
    AllowanceCharge,
    Delivery,
    Header,
    InvoiceDocument,
    LineItem,
    MonetaryTotals,
    Party,
    Payment,
    TaxTotal,
)
from einvoice.services.mapping.addresses import split_address_lines, to_state_code
from einvoice.services.mapping.ubl import (
    AGGREGATE_NAMESPACE,
    BASIC_NAMESPACE,
    INVOICE_NAMESPACE,
    Node,
    aggregate,
    amount,
    flag,
    number,
    prune,
    text,
    to_number,
    to_text,
    validate_invoice,
)

logger = logging.getLogger(__name__)

DEFAULT_TAX_SCHEME_ID = "OTH"
TAX_SCHEME_LIST_ID = "UN/ECE 5153"
TAX_SCHEME_AGENCY_ID = "6"
DEFAULT_TAX_CATEGORY_ID = "01"
CONSOLIDATED_CLASSIFICATION_CODE = "004"
HOME_CURRENCY = "MYR"

# Buyer ids always emitted, in order; the second slot takes the first
# supporting id the buyer actually has.
SUPPORTING_ID_SCHEMES = ("BRN", "NRIC", "PASSPORT", "ARMY")

DocumentInput = Union[InvoiceDocument, dict]


def _coerce(document: DocumentInput) -> InvoiceDocument:
    if isinstance(document, InvoiceDocument):
        return document
    if not isinstance(document, dict):
        raise MappingError("Invalid document structure")
    try:
        return InvoiceDocument.model_validate(document)
    except ValidationError as e:
        raise MappingError(
            "Invalid document structure",
            details=[{"loc": [str(part) for part in err["loc"]], "msg": err["msg"]} for err in e.errors()],
        )


def _country(code: Optional[str]) -> Node:
    return aggregate(IdentificationCode=[{
        "_": code,
        "listID": "ISO3166-1",
        "listAgencyID": "6",
    }])


def _postal_address(address: Address) -> Node:
    lines = split_address_lines(address.line)
    return aggregate(
        CityName=text(address.city),
        PostalZone=text(address.postcode),
        CountrySubentityCode=text(to_state_code(address.state) or address.state),
        AddressLine=[{"Line": text(line)} for line in lines] or None,
        Country=_country(address.country),
    )


def _contact(party: Party) -> Node:
    return aggregate(
        Telephone=text(party.contact.phone),
        ElectronicMail=text(party.contact.email),
    )


def _buyer_identifications(identifications) -> list[dict]:
    by_scheme = {}
    for identification in identifications:
        if identification.scheme_id and identification.scheme_id not in by_scheme:
            by_scheme[identification.scheme_id] = identification.id

    supporting = next(
        (scheme for scheme in SUPPORTING_ID_SCHEMES if by_scheme.get(scheme) not in (None, "")),
        SUPPORTING_ID_SCHEMES[0],
    )
    return [
        {"ID": text(by_scheme.get(scheme), schemeID=scheme)}
        for scheme in ("TIN", supporting, "SST", "TTX")
    ]


def _header(header: Header, schema_version: str) -> dict:
    references = header.document_reference
    additional_references = [
        {
            "ID": text(references.billing_reference),
            "DocumentType": text(references.billing_reference_type),
        }
    ] + [
        {
            "ID": text(reference.id),
            "DocumentType": text(reference.type),
            "DocumentDescription": text(reference.description) if reference.description else None,
        }
        for reference in references.additional_refs
    ]

    if references.billing_reference not in (None, "") and references.billing_reference_uuid:
        billing_reference = aggregate(InvoiceDocumentReference=aggregate(
            ID=text(references.billing_reference),
            UUID=text(references.billing_reference_uuid),
        ))
    else:
        billing_reference = aggregate(AdditionalDocumentReference=additional_references)

    return {
        "ID": text(header.invoice_no),
        "IssueDate": text(header.issue_date),
        "IssueTime": text(header.issue_time),
        "InvoiceTypeCode": text(header.invoice_type, listVersionID=schema_version),
        "DocumentCurrencyCode": text(header.document_currency_code),
        "TaxCurrencyCode": text(header.tax_currency_code),
        "InvoicePeriod": aggregate(
            StartDate=text(header.invoice_period.start_date),
            EndDate=text(header.invoice_period.end_date),
            Description=text(header.invoice_period.description),
        ),
        "BillingReference": billing_reference,
        "AdditionalDocumentReference": additional_references,
    }


def _supplier(party: Party) -> Node:
    additional_account = None
    if party.additional_account_id not in (None, ""):
        additional_account = text(party.additional_account_id, schemeAgencyName=party.scheme_agency_name)

    return [{
        "AdditionalAccountID": additional_account,
        "Party": aggregate(
            IndustryClassificationCode=text(party.industry_classification_code, name=party.industry_name),
            PartyIdentification=[
                {"ID": text(identification.id, schemeID=identification.scheme_id)}
                for identification in party.identifications
            ],
            PostalAddress=_postal_address(party.address),
            PartyLegalEntity=aggregate(RegistrationName=text(party.name)),
            Contact=_contact(party),
        ),
    }]


def _buyer(party: Party) -> Node:
    return aggregate(Party=aggregate(
        PartyIdentification=_buyer_identifications(party.identifications),
        PostalAddress=_postal_address(party.address),
        PartyLegalEntity=aggregate(RegistrationName=text(party.name)),
        Contact=_contact(party),
    ))


def _delivery(delivery: Optional[Delivery], currency: Optional[str]) -> Optional[Node]:
    if delivery is None or not delivery.name or delivery.name == "NA":
        return None

    delivery_party = {
        "PartyIdentification": _buyer_identifications(delivery.identifications) if delivery.identifications else None,
        "PartyLegalEntity": aggregate(RegistrationName=text(delivery.name)),
        "PostalAddress": _postal_address(delivery.address) if delivery.address else None,
    }

    shipment = None
    if delivery.shipment is not None:
        freight = delivery.shipment.freight_allowance_charge
        shipment = aggregate(
            ID=text(delivery.shipment.id),
            FreightAllowanceCharge=aggregate(
                ChargeIndicator=flag(freight.charge_indicator),
                AllowanceChargeReason=text(freight.reason),
                Amount=amount(freight.amount, currency),
            ),
        )

    return aggregate(DeliveryParty=[delivery_party], Shipment=shipment)


def _payment(payment: Payment, currency: Optional[str]) -> dict:
    prepaid = payment.prepaid_payment
    return {
        "PaymentMeans": aggregate(
            PaymentMeansCode=text(payment.payment_means_code),
            PayeeFinancialAccount=aggregate(ID=text(payment.payee_financial_account)),
        ),
        "PaymentTerms": aggregate(Note=text(payment.payment_terms)),
        "PrepaidPayment": aggregate(
            ID=text(prepaid.id),
            PaidAmount=amount(prepaid.amount, currency),
            PaidDate=text(prepaid.date),
            PaidTime=text(prepaid.time),
        ),
    }


def _allowance_charges(charges: Sequence[AllowanceCharge], currency: Optional[str]) -> list[dict]:
    return [
        {
            "ChargeIndicator": flag(charge.charge_indicator),
            "AllowanceChargeReason": text(charge.reason or "NA"),
            "MultiplierFactorNumeric": number(charge.multiplier_factor_numeric),
            "Amount": amount(charge.amount if charge.amount not in (None, "") else 0, currency),
        }
        for charge in charges
    ]


def _tax_total(
    tax_total: Optional[TaxTotal],
    document_currency: Optional[str],
    tax_currency: Optional[str],
    line_level: bool = False,
) -> list[dict]:
    if tax_total is None:
        return []

    tax_currency = tax_currency or document_currency
    subtotals = []
    for subtotal in tax_total.tax_subtotal:
        category = subtotal.tax_category
        scheme = category.tax_scheme
        tax_category = {
            "ID": text(category.id if category.id not in (None, "") else DEFAULT_TAX_CATEGORY_ID),
            "Percent": None,
            "TaxExemptionReason": None,
            "TaxScheme": aggregate(ID=text(
                (scheme.id if scheme and scheme.id else DEFAULT_TAX_SCHEME_ID),
                schemeID=(scheme.scheme_id if scheme and scheme.scheme_id else TAX_SCHEME_LIST_ID),
                schemeAgencyID=(scheme.scheme_agency_id if scheme and scheme.scheme_agency_id else TAX_SCHEME_AGENCY_ID),
            )),
        }
        if line_level:
            tax_category["Percent"] = number(category.percent if category.percent not in (None, "") else 0)
            tax_category["TaxExemptionReason"] = text(category.exemption_reason) if category.exemption_reason else None

        subtotals.append({
            "TaxableAmount": amount(subtotal.taxable_amount, document_currency),
            "TaxAmount": amount(subtotal.tax_amount, tax_currency),
            "TaxCategory": [tax_category],
        })

    return [{
        "TaxAmount": amount(tax_total.tax_amount, tax_currency),
        "TaxSubtotal": subtotals,
    }]


def _monetary_total(amounts: MonetaryTotals, currency: Optional[str]) -> Node:
    return aggregate(
        LineExtensionAmount=amount(amounts.line_extension_amount, currency),
        TaxExclusiveAmount=amount(amounts.tax_exclusive_amount, currency),
        TaxInclusiveAmount=amount(amounts.tax_inclusive_amount, currency),
        AllowanceTotalAmount=amount(amounts.allowance_total_amount, currency),
        ChargeTotalAmount=amount(amounts.charge_total_amount, currency),
        PayableRoundingAmount=amount(amounts.payable_rounding_amount, currency),
        PayableAmount=amount(amounts.payable_amount, currency),
    )


def _commodity_classifications(item: LineItem) -> list[dict]:
    classifications = []
    code = item.item.classification.code
    if code not in (None, ""):
        if to_text(code) == CONSOLIDATED_CLASSIFICATION_CODE:
            classifications.append({"ItemClassificationCode": [{
                "_": CONSOLIDATED_CLASSIFICATION_CODE,
                "listID": "CLASS",
                "name": "Consolidated Receipt",
            }]})
        else:
            classifications.append({"ItemClassificationCode": text(
                code, listID=item.item.classification.type or "CLASS"
            )})

    if item.item.ptc_code not in (None, ""):
        classifications.append({"ItemClassificationCode": text(item.item.ptc_code, listID="PTC")})

    return classifications


def _invoice_line(item: LineItem, document_currency: Optional[str], tax_currency: Optional[str]) -> dict:
    description = item.item.description
    if to_text(item.item.classification.code) == CONSOLIDATED_CLASSIFICATION_CODE:
        description = f"Receipt {description or ''}".strip()

    return {
        "ID": text(item.line_id),
        "InvoicedQuantity": [{
            "_": to_number(item.quantity),
            "unitCode": item.unit_code,
        }],
        "LineExtensionAmount": amount(item.line_extension_amount, document_currency),
        "AllowanceCharge": _allowance_charges(item.allowance_charges, document_currency),
        "TaxTotal": _tax_total(item.tax_total, document_currency, tax_currency, line_level=True),
        "Item": aggregate(
            CommodityClassification=_commodity_classifications(item),
            Description=text(description),
            OriginCountry=aggregate(IdentificationCode=[{
                "_": item.item.origin_country or "",
                "listID": "ISO3166-1",
                "listAgencyID": "6",
            }]),
        ),
        "Price": aggregate(PriceAmount=amount(item.price.amount, document_currency)),
        "ItemPriceExtension": aggregate(Amount=amount(item.price.extension, document_currency)),
    }


def _tax_exchange_rate(header: Header) -> Optional[Node]:
    if not header.tax_currency_code or header.tax_currency_code == HOME_CURRENCY:
        return None
    return aggregate(
        SourceCurrencyCode=text(header.document_currency_code),
        TargetCurrencyCode=text(header.tax_currency_code),
        CalculationRate=[{"_": to_number(header.exchange_rate) or 0}],
    )


def build_invoice(document: InvoiceDocument, schema_version: str) -> dict[str, Any]:
    """Assemble the unpruned ``Invoice`` node for one document."""
    header = document.header
    currency = header.document_currency_code
    tax_currency = header.tax_currency_code

    invoice = _header(header, schema_version)
    invoice["AccountingSupplierParty"] = _supplier(document.supplier)
    invoice["AccountingCustomerParty"] = _buyer(document.buyer)
    invoice["Delivery"] = _delivery(document.delivery, currency)
    invoice.update(_payment(document.payment, currency))
    invoice["AllowanceCharge"] = _allowance_charges(document.allowance_charge, currency)
    invoice["TaxTotal"] = _tax_total(document.summary.tax_total, currency, tax_currency)
    invoice["LegalMonetaryTotal"] = _monetary_total(document.summary.amounts, currency)
    invoice["InvoiceLine"] = [_invoice_line(item, currency, tax_currency) for item in document.items]
    invoice["TaxExchangeRate"] = _tax_exchange_rate(header)
    return invoice


def map_documents(documents: Sequence[DocumentInput], schema_version: str = "1.0") -> dict[str, Any]:
    """
    Map the lead document of ``documents`` to the canonical submission tree.

    Raises:
        MappingError: No documents, a malformed document, or a lead document
            without a document number.
    """
    if not documents:
        raise MappingError("No document data provided")

    document = _coerce(documents[0])
    if document.header.invoice_no in (None, ""):
        raise MappingError("Invalid document structure: document number is missing")

    logger.debug(f"Mapping document {document.header.invoice_no} (schema version {schema_version})")

    canonical = prune({
        "_D": INVOICE_NAMESPACE,
        "_A": AGGREGATE_NAMESPACE,
        "_B": BASIC_NAMESPACE,
        "Invoice": [build_invoice(document, schema_version)],
    })
    validate_invoice(canonical)
    return canonical
