"""Response schemas sent to the provider, one per document kind.

Written in the OpenAPI subset accepted by ``generationConfig.response_schema``.
Field names match the pydantic shapes in ``docextract.api.v1.schemas``.
"""

from typing import Any

from docextract.api.v1.schemas import DocumentKind


def _string(description: str | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "STRING", "nullable": True}
    if description:
        schema["description"] = description
    return schema


def _integer(description: str | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "INTEGER", "nullable": True}
    if description:
        schema["description"] = description
    return schema


def _number(description: str | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "NUMBER", "nullable": True}
    if description:
        schema["description"] = description
    return schema


def _array(items: dict[str, Any], description: str | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "ARRAY", "items": items}
    if description:
        schema["description"] = description
    return schema


def _object(properties: dict[str, Any], **extra: Any) -> dict[str, Any]:
    return {"type": "OBJECT", "properties": properties, **extra}


INVOICE_SCHEMA = _object(
    {
        "invoice_number": _string("Invoice reference number"),
        "invoice_date": _string("Invoice issue date formatted as YYYY-MM-DD"),
        "due_date": _string("Payment deadline formatted as YYYY-MM-DD"),
        "currency": _string("ISO 4217 currency code, inferred from the symbol"),
        "supplier_name": _string("Name of the company that issued the invoice"),
        "supplier_vat": _string("Supplier VAT ID, only if explicitly stated"),
        "supplier_taxid": _string(),
        "supplier_iban": _string(),
        "supplier_email": _string(),
        "supplier_street_and_number": _string(),
        "supplier_city": _string(),
        "supplier_zipcode": _string(),
        "supplier_country": _string("ISO 3166-1 alpha-2 country code"),
        "recipient_name": _string(),
        "recipient_vat": _string(),
        "recipient_country": _string("ISO 3166-1 alpha-2 country code"),
        "total_excl_vat": _integer("Total excluding taxes in minor units"),
        "total_vat_amount": _integer("Total VAT in minor units"),
        "total_inc_vat": _integer("Total including taxes in minor units"),
        "amount_paid": _integer("Amount already paid in minor units"),
        "total_deductions": _integer("Discounts deducted in minor units"),
        "payment_terms": _string("Payment term code, e.g. NET 30"),
        "line_items": _array(
            _object(
                {
                    "product": _string(),
                    "description": _string(),
                    "quantity": _number(),
                    "unit_price": _integer("Price per unit in minor units"),
                    "units": _string(),
                    "total_excl_vat": _integer(),
                    "total_inc_vat": _integer("Line total including taxes"),
                    "vat_amount": _integer(),
                    "vat_percent": _number("Tax percent, e.g. 21 for 21%"),
                }
            ),
            "All line items from every page",
        ),
        "language": _string("ISO 639 language of the document"),
        "document_type": _string(),
    }
)

RECEIPT_SCHEMA = _object(
    {
        "document_reference": _string("Receipt number, only if stated"),
        "currency": _string("ISO 4217 currency code in uppercase"),
        "date": _string("Purchase date and time in ISO 8601"),
        "amount": {"type": "NUMBER", "description": "Total including taxes"},
        "subtotal": _number("Subtotal before taxes"),
        "tax": _number("Highest tax percentage stated"),
        "tax_amount": _number("Total tax amount"),
        "tax_type": _string("Tax label as printed, e.g. VAT, IVA"),
        "discount": _number(),
        "description": _string("Short summary of the purchase"),
        "sender": _object(
            {
                "name": _string(),
                "vat_number": _string(),
                "tax_reference": _string(),
                "email": _string(),
                "address": _object(
                    {
                        "street_and_number": _string(),
                        "city": _string(),
                        "postal_code": _string(),
                        "country": _string("ISO 3166-1 alpha-2 country code"),
                        "state": _string(),
                    },
                    nullable=True,
                ),
            },
            nullable=True,
        ),
        "line_items": _array(
            _object(
                {
                    "name": _string(),
                    "description": _string(),
                    "quantity": _number(),
                    "unit_price": _number(),
                    "unit": _string(),
                    "subtotal": _number(),
                    "tax": _number(),
                    "tax_amount": _number(),
                    "total": _number(),
                    "discount": _number(),
                }
            ),
            "Purchased items only; no loyalty, cashier or transaction numbers",
        ),
    },
    required=["amount"],
)

UNIFIED_DOCUMENT_SCHEMA = _object(
    {
        "document_type": {
            "type": "STRING",
            "enum": ["invoice", "receipt", "credit_note", "other"],
        },
        "document_number": _string(),
        "date": _string("Document date formatted as YYYY-MM-DD"),
        "total_amount": _integer("Total in minor units"),
        "subtotal": _integer("Amount before tax in minor units"),
        "tax_amount": _integer("Sum of all tax bands in minor units"),
        "tax_rate": _number(),
        "tax_breakdown": _array(
            _object(
                {
                    "tax_rate": {"type": "NUMBER"},
                    "tax_base": {"type": "INTEGER"},
                    "tax_amount": {"type": "INTEGER"},
                },
                required=["tax_rate", "tax_base", "tax_amount"],
            ),
            "One entry per row of the VAT table, values from the same row",
        ),
        "currency": _string(),
        "counterparty": _object(
            {"name": _string(), "vat_number": _string()}, required=["name"]
        ),
        "line_items": _array(
            _object(
                {
                    "description": _string(),
                    "quantity": _number(),
                    "subtotal": _integer(),
                    "tax_rate": _number(),
                    "total": _integer(),
                }
            )
        ),
    },
    required=[
        "document_type",
        "document_number",
        "date",
        "counterparty",
        "total_amount",
        "subtotal",
    ],
)

RESPONSE_SCHEMAS: dict[DocumentKind, dict[str, Any]] = {
    "invoice": INVOICE_SCHEMA,
    "receipt": RECEIPT_SCHEMA,
    "document": UNIFIED_DOCUMENT_SCHEMA,
}
