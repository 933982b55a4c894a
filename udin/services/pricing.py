"""Order pricing: document catalogue, tier multipliers, bulk discount and GST.

Everything here is a pure function of its inputs plus the static catalogue and
the discount configuration, so the client and the server price a cart the same
way. Money is computed in ``Decimal`` and rounded half-up to paise.
"""

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Literal

from pydantic import BaseModel, Field

from udin.core.config import get_settings
from udin.core.exceptions import ValidationError
from udin.core.schemas import CamelModel

Tier = Literal["Standard", "Express", "Premium"]

GST_RATE = Decimal("0.18")
_CENT = Decimal("0.01")


class DocumentType(BaseModel):
    id: str
    name: str
    base_price: Decimal
    processing_time: str  # "lo-hi" hours
    udin_required: bool = False


class PricingTier(BaseModel):
    name: Tier
    multiplier: Decimal
    speedup: Decimal


DOCUMENT_TYPES: list[DocumentType] = [
    DocumentType(id="pan-verification", name="PAN Verification", base_price=Decimal("100"), processing_time="12-24"),
    DocumentType(id="aadhaar-verification", name="Aadhaar Verification", base_price=Decimal("100"), processing_time="12-24"),
    DocumentType(id="bank-statement", name="Bank Statement Attestation", base_price=Decimal("300"), processing_time="24-48", udin_required=True),
    DocumentType(id="itr-acknowledgement", name="ITR Acknowledgement", base_price=Decimal("400"), processing_time="24-48", udin_required=True),
    DocumentType(id="gst-certificate", name="GST Certificate", base_price=Decimal("500"), processing_time="24-48", udin_required=True),
    DocumentType(id="turnover-certificate", name="Turnover Certificate", base_price=Decimal("1200"), processing_time="48-72", udin_required=True),
    DocumentType(id="net-worth-certificate", name="Net Worth Certificate", base_price=Decimal("1500"), processing_time="48-72", udin_required=True),
    DocumentType(id="form-15cb", name="Form 15CB", base_price=Decimal("2000"), processing_time="48-72", udin_required=True),
    DocumentType(id="balance-sheet", name="Audited Balance Sheet", base_price=Decimal("2500"), processing_time="72-96", udin_required=True),
]

PRICING_TIERS: list[PricingTier] = [
    PricingTier(name="Standard", multiplier=Decimal("1.0"), speedup=Decimal("1.0")),
    PricingTier(name="Express", multiplier=Decimal("1.5"), speedup=Decimal("0.67")),
    PricingTier(name="Premium", multiplier=Decimal("2.0"), speedup=Decimal("0.5")),
]

_TYPES_BY_ID = {dt.id: dt for dt in DOCUMENT_TYPES}
_TIERS_BY_NAME = {t.name: t for t in PRICING_TIERS}


class OrderLine(CamelModel):
    document_type_id: str
    tier: str = "Standard"
    quantity: int = 1
    file_id: str | None = None
    file_name: str | None = None


class BreakdownLine(CamelModel):
    document_type_id: str
    document_type: str
    tier: str
    quantity: int
    unit_price: float
    total_price: float


class OrderCalculation(CamelModel):
    subtotal: float = 0.0
    bulk_discount: float = 0.0
    gst_amount: float = 0.0
    total_amount: float = 0.0
    breakdown: list[BreakdownLine] = Field(default_factory=list)


def money(value: Decimal | float | int | str) -> Decimal:
    return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal | float | int | str) -> int:
    """Major units -> integer paise, rounded to nearest."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def get_document_type(document_type_id: str) -> DocumentType:
    dt = _TYPES_BY_ID.get(document_type_id)
    if dt is None:
        raise ValidationError(f"Unknown document type: {document_type_id}")
    return dt


def get_tier(tier: str | None) -> PricingTier:
    t = _TIERS_BY_NAME.get(tier or "Standard")
    if t is None:
        raise ValidationError(f"Unknown pricing tier: {tier}")
    return t


def unit_price(document_type_id: str, tier: str | None = "Standard") -> Decimal:
    return money(get_document_type(document_type_id).base_price * get_tier(tier).multiplier)


def calculate_order(
    lines: Iterable[OrderLine],
    bulk_threshold: int | None = None,
    bulk_percent: float | Decimal | None = None,
) -> OrderCalculation:
    """Price a cart. Empty input yields an all-zero calculation."""
    settings = get_settings()
    threshold = settings.bulk_discount_threshold if bulk_threshold is None else bulk_threshold
    percent = Decimal(str(settings.bulk_discount_percent if bulk_percent is None else bulk_percent))

    lines = list(lines)
    if not lines:
        return OrderCalculation()

    subtotal = Decimal("0")
    count = 0
    breakdown: list[BreakdownLine] = []
    for line in lines:
        if line.quantity <= 0:
            raise ValidationError(f"Invalid quantity for {line.document_type_id}: {line.quantity}")
        dt = get_document_type(line.document_type_id)
        price = unit_price(line.document_type_id, line.tier)
        total = money(price * line.quantity)
        subtotal += total
        count += line.quantity
        breakdown.append(
            BreakdownLine(
                document_type_id=dt.id,
                document_type=dt.name,
                tier=get_tier(line.tier).name,
                quantity=line.quantity,
                unit_price=float(price),
                total_price=float(total),
            )
        )

    subtotal = money(subtotal)
    discount = money(subtotal * percent / 100) if count >= threshold else Decimal("0.00")
    taxable = subtotal - discount
    gst = money(taxable * GST_RATE)
    total = money(taxable + gst)
    return OrderCalculation(
        subtotal=float(subtotal),
        bulk_discount=float(discount),
        gst_amount=float(gst),
        total_amount=float(total),
        breakdown=breakdown,
    )


def _max_hours(processing_time: str) -> int:
    return int(processing_time.split("-")[-1])


def estimate_processing_time(lines: Iterable[OrderLine]) -> str:
    lines = list(lines)
    if not lines:
        return "N/A"
    hours = max(_max_hours(get_document_type(line.document_type_id).processing_time) for line in lines)
    tiers = {get_tier(line.tier).name for line in lines}
    if "Premium" in tiers:
        hours = math.ceil(hours * _TIERS_BY_NAME["Premium"].speedup)
    elif "Express" in tiers:
        hours = math.ceil(hours * _TIERS_BY_NAME["Express"].speedup)
    if hours <= 24:
        return f"{hours} hours"
    days = math.ceil(hours / 24)
    if hours <= 48:
        return f"{days} day{'s' if days > 1 else ''}"
    return f"{days} days"


def validate_order(lines: Iterable[OrderLine]) -> list[str]:
    """Human-readable problems with a cart; empty list means payable."""
    errors: list[str] = []
    lines = list(lines)
    if not lines:
        errors.append("No documents in order")
    for i, line in enumerate(lines, start=1):
        if line.document_type_id not in _TYPES_BY_ID:
            errors.append(f"Invalid document type for item {i}")
        if (line.tier or "Standard") not in _TIERS_BY_NAME:
            errors.append(f"Invalid tier for item {i}")
        if line.quantity <= 0:
            errors.append(f"Invalid quantity for item {i}")
    if not errors and calculate_order(lines).total_amount <= 0:
        errors.append("Invalid total amount")
    return errors


def order_summary(lines: Iterable[OrderLine]) -> dict:
    lines = list(lines)
    calc = calculate_order(lines)
    return {
        "totalDocuments": sum(line.quantity for line in lines),
        "totalAmount": calc.total_amount,
        "hasValidOrder": bool(lines) and calc.total_amount > 0,
        "requiresUdin": any(
            _TYPES_BY_ID[line.document_type_id].udin_required
            for line in lines
            if line.document_type_id in _TYPES_BY_ID
        ),
    }
