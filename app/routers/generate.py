from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from app.deps import get_current_account_id, get_generator, get_ledger
from app.services import studio
from app.services.credits import CreditLedger
from app.services.generation import (
    SECTION_TYPES,
    SectionGenerator,
    normalize_section_type,
    validate_reference_image,
)

router = APIRouter()


class GenerationStreamingResponse(StreamingResponse):
    """Settles the credit however the response ends, even if the body never starts."""

    def __init__(self, stream: studio.GenerationStream) -> None:
        super().__init__(stream.lines(), media_type="application/x-ndjson")
        self.stream = stream

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.stream.settle()


async def _read_request(
    section_type: str = Form(...),
    requirements: str = Form(""),
    image_descriptions: str = Form(""),
    reference_image: UploadFile | None = File(None),
) -> studio.GenerationRequest:
    image = None
    if reference_image is not None and reference_image.filename:
        content = await reference_image.read()
        image = validate_reference_image(content, reference_image.content_type)
    return studio.GenerationRequest(
        section_type=normalize_section_type(section_type),
        requirements=requirements,
        image_descriptions=image_descriptions,
        image=image,
    )


@router.post("")
async def generate_code(
    req: studio.GenerationRequest = Depends(_read_request),
    account_id: int = Depends(get_current_account_id),
    ledger: CreditLedger = Depends(get_ledger),
    generator: SectionGenerator = Depends(get_generator),
):
    """Generate a Shopify section; costs one credit, refunded if generation fails."""
    result = await studio.generate_section(ledger, generator, account_id, req)
    return {
        "code": result.code,
        "credits_remaining": result.balance.current,
        "max_credits": result.balance.max,
    }


@router.post("/stream")
async def generate_code_stream(
    req: studio.GenerationRequest = Depends(_read_request),
    account_id: int = Depends(get_current_account_id),
    ledger: CreditLedger = Depends(get_ledger),
    generator: SectionGenerator = Depends(get_generator),
):
    """NDJSON progress stream; the credit is taken before the stream opens."""
    balance = await ledger.consume(account_id, studio.GENERATION_COST)
    return GenerationStreamingResponse(studio.GenerationStream(ledger, generator, account_id, req, balance))


@router.get("/section-types")
async def section_types():
    return {"section_types": list(SECTION_TYPES)}
