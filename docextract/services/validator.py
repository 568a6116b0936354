import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from dateutil.parser import isoparse

from docextract.api.v1.schemas import (
    DocumentKind,
    DocumentShape,
    Invoice,
    Receipt,
    UnifiedDocument,
)

# One minor unit absorbs rounding between subtotal, tax and total.
_TOTALS_TOLERANCE = Decimal("1")

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass
class ValidationReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def is_calendar_date(value: str) -> bool:
    """True for a real date written strictly as YYYY-MM-DD."""
    if not _ISO_DATE.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def is_iso8601(value: str) -> bool:
    try:
        isoparse(value)
    except (ValueError, OverflowError):
        return False
    return True


def _totals_mismatch(
    subtotal: Decimal | None, tax: Decimal | None, total: Decimal | None
) -> Decimal | None:
    if subtotal is None or tax is None or total is None:
        return None
    calculated = subtotal + tax
    return calculated if abs(calculated - total) > _TOTALS_TOLERANCE else None


def _line_items_mismatch(
    line_totals: Sequence[Decimal | None], total: Decimal | None
) -> Decimal | None:
    if not line_totals or total is None:
        return None
    line_sum = sum((t or Decimal(0) for t in line_totals), Decimal(0))
    # One minor unit of tolerance per line for per-line rounding.
    return line_sum if abs(line_sum - total) > len(line_totals) else None


def validate_invoice(invoice: Invoice) -> ValidationReport:
    report = ValidationReport()
    total = invoice.total_inc_vat

    if not invoice.invoice_number:
        report.warnings.append("Missing invoice number")
    if total is None:
        report.warnings.append("Missing total amount including VAT")
    elif total < 0:
        report.errors.append("Total amount cannot be negative")

    calculated = _totals_mismatch(
        invoice.total_excl_vat, invoice.total_vat_amount, total
    )
    if calculated is not None:
        report.warnings.append(
            f"VAT calculation mismatch: {invoice.total_excl_vat} + "
            f"{invoice.total_vat_amount} = {calculated}, but total_inc_vat is {total}"
        )

    line_sum = _line_items_mismatch(
        [item.total_inc_vat for item in invoice.line_items], total
    )
    if line_sum is not None:
        report.warnings.append(
            f"Line items sum ({line_sum}) doesn't match total ({total})"
        )

    if invoice.invoice_date and not is_calendar_date(invoice.invoice_date):
        report.errors.append(f"Invalid invoice date format: {invoice.invoice_date}")
    return report


def validate_receipt(receipt: Receipt) -> ValidationReport:
    report = ValidationReport()
    if receipt.amount is None:
        report.errors.append("Missing total amount")
    elif receipt.amount < 0:
        report.errors.append("Total amount cannot be negative")
    if receipt.date and not is_iso8601(receipt.date):
        report.errors.append(f"Invalid date format: {receipt.date}")
    return report


def validate_unified_document(document: UnifiedDocument) -> ValidationReport:
    report = ValidationReport()
    total = document.total_amount

    if total is None:
        report.warnings.append("Missing total amount")
    elif total < 0:
        report.errors.append("Total amount cannot be negative")

    calculated = _totals_mismatch(document.subtotal, document.tax_amount, total)
    if calculated is not None:
        report.warnings.append(
            f"Amount calculation mismatch: {document.subtotal} + "
            f"{document.tax_amount} = {calculated}, but total is {total}"
        )

    if document.date and not is_iso8601(document.date):
        report.errors.append(f"Invalid date format: {document.date}")
    return report


class ExtractionValidator:
    """Checks a parsed document against the accounting rules of its kind.

    Rule violations are reported, never raised: ``errors`` flag the document
    for mandatory review and ``warnings`` are advisory.
    """

    def validate(
        self, document: DocumentShape, document_kind: DocumentKind
    ) -> ValidationReport:
        match document_kind, document:
            case "invoice", Invoice():
                return validate_invoice(document)
            case "receipt", Receipt():
                return validate_receipt(document)
            case "document", UnifiedDocument():
                return validate_unified_document(document)
        return ValidationReport(
            errors=[
                f"Extracted {type(document).__name__} cannot be checked "
                f"as a {document_kind}"
            ]
        )
