from fastapi import APIRouter
from pydantic import BaseModel, Field

from udin.services import pricing as pricing_service

router = APIRouter()


class QuoteRequest(BaseModel):
    lines: list[pricing_service.OrderLine] = Field(default_factory=list)


@router.get("/catalogue")
async def pricing_catalogue():
    """Document types and tiers the quote is computed from."""
    return {
        "documentTypes": [
            {
                "id": dt.id,
                "name": dt.name,
                "basePrice": float(dt.base_price),
                "processingTime": f"{dt.processing_time} hours",
                "udinRequired": dt.udin_required,
            }
            for dt in pricing_service.DOCUMENT_TYPES
        ],
        "tiers": [
            {"name": t.name, "multiplier": float(t.multiplier)} for t in pricing_service.PRICING_TIERS
        ],
        "gstRate": float(pricing_service.GST_RATE),
    }


@router.post("/quote")
async def pricing_quote(body: QuoteRequest):
    """Price a cart the same way the order endpoint will."""
    problems = pricing_service.validate_order(body.lines)
    if problems and body.lines:
        return {"errors": problems, "calculation": None}
    return {
        "errors": problems,
        "calculation": pricing_service.calculate_order(body.lines).dump(),
        "processingTime": pricing_service.estimate_processing_time(body.lines),
        "summary": pricing_service.order_summary(body.lines),
    }
