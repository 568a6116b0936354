from decimal import Decimal
from typing import Annotated, Any, Generic, Literal, TypeVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

DocumentKind = Literal["invoice", "receipt", "document"]

DocumentT = TypeVar("DocumentT")


class _ProviderModel(BaseModel):
    """Base for shapes returned by the provider; unknown keys are dropped."""

    model_config = ConfigDict(extra="ignore")


def _none_to_empty(value: Any) -> Any:
    return [] if value is None else value


_NullAsEmpty = BeforeValidator(_none_to_empty)


class InvoiceLineItem(_ProviderModel):
    product: str | None = None
    description: str | None = None
    quantity: Decimal | None = None
    unit_price: Decimal | None = None
    units: str | None = None
    total_excl_vat: Decimal | None = None
    total_inc_vat: Decimal | None = None
    vat_amount: Decimal | None = None
    vat_percent: Decimal | None = None


class Invoice(_ProviderModel):
    invoice_number: str | None = None
    invoice_date: str | None = None
    due_date: str | None = None
    currency: str | None = None

    supplier_name: str | None = None
    supplier_vat: str | None = None
    supplier_taxid: str | None = None
    supplier_iban: str | None = None
    supplier_email: str | None = None
    supplier_street_and_number: str | None = None
    supplier_city: str | None = None
    supplier_zipcode: str | None = None
    supplier_country: str | None = None

    recipient_name: str | None = None
    recipient_vat: str | None = None
    recipient_country: str | None = None

    # Amounts are in minor units (cents).
    total_excl_vat: Decimal | None = None
    total_vat_amount: Decimal | None = None
    total_inc_vat: Decimal | None = None
    amount_paid: Decimal | None = None
    total_deductions: Decimal | None = None

    payment_terms: str | None = None
    line_items: Annotated[list[InvoiceLineItem], _NullAsEmpty] = Field(
        default_factory=list
    )
    language: str | None = None
    document_type: str | None = None


class Address(_ProviderModel):
    street_and_number: str | None = None
    city: str | None = None
    postal_code: str | None = None
    country: str | None = None
    state: str | None = None


class ReceiptSender(_ProviderModel):
    name: str | None = None
    vat_number: str | None = None
    tax_reference: str | None = None
    email: str | None = None
    address: Address | None = None


class ReceiptLineItem(_ProviderModel):
    name: str | None = None
    description: str | None = None
    quantity: Decimal | None = None
    unit_price: Decimal | None = None
    unit: str | None = None
    subtotal: Decimal | None = None
    tax: Decimal | None = None
    tax_amount: Decimal | None = None
    total: Decimal | None = None
    discount: Decimal | None = None


class Receipt(_ProviderModel):
    document_reference: str | None = None
    currency: str | None = None
    date: str | None = None
    amount: Decimal | None = None
    subtotal: Decimal | None = None
    tax: Decimal | None = None
    tax_amount: Decimal | None = None
    tax_type: str | None = None
    discount: Decimal | None = None
    description: str | None = None
    sender: ReceiptSender | None = None
    line_items: Annotated[list[ReceiptLineItem], _NullAsEmpty] = Field(
        default_factory=list
    )


class TaxBand(_ProviderModel):
    tax_rate: Decimal
    tax_base: Decimal
    tax_amount: Decimal


class Counterparty(_ProviderModel):
    name: str | None = None
    vat_number: str | None = None


class UnifiedLineItem(_ProviderModel):
    description: str | None = None
    quantity: Decimal | None = None
    subtotal: Decimal | None = None
    tax_rate: Decimal | None = None
    total: Decimal | None = None


class UnifiedDocument(_ProviderModel):
    document_type: Literal["invoice", "receipt", "credit_note", "other"] | None = None
    document_number: str | None = None
    date: str | None = None
    # Amounts are in minor units (cents).
    total_amount: Decimal | None = None
    subtotal: Decimal | None = None
    tax_amount: Decimal | None = None
    tax_rate: Decimal | None = None
    tax_breakdown: Annotated[list[TaxBand], _NullAsEmpty] = Field(
        default_factory=list
    )
    currency: str | None = None
    counterparty: Counterparty | None = None
    line_items: Annotated[list[UnifiedLineItem], _NullAsEmpty] = Field(
        default_factory=list
    )


DocumentShape = Invoice | Receipt | UnifiedDocument

DOCUMENT_MODELS: dict[DocumentKind, type[DocumentShape]] = {
    "invoice": Invoice,
    "receipt": Receipt,
    "document": UnifiedDocument,
}


class FileMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    mimeType: str
    fileSize: int
    width: int | None = None
    height: int | None = None
    pageCount: int | None = None
    format: str | None = None


class ExtractionResult(BaseModel, Generic[DocumentT]):
    success: bool
    data: DocumentT | None = None
    error: str | None = None
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    durationMs: int
    metadata: FileMetadata
