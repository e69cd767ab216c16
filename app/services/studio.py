"""Paid generation: one credit per successful section."""

from collections.abc import AsyncIterator
from dataclasses import dataclass

import anyio
import orjson

from app.core.exceptions import AppError, DatastoreUnavailableError
from app.core.logging import get_logger
from app.services.credits import Balance, CreditLedger
from app.services.generation import ReferenceImage, SectionGenerator

log = get_logger(__name__)

GENERATION_COST = 1


@dataclass
class GenerationRequest:
    section_type: str
    requirements: str = ""
    image_descriptions: str = ""
    image: ReferenceImage | None = None


@dataclass
class GenerationResult:
    code: str
    balance: Balance


async def _refund(ledger: CreditLedger, account_id: int) -> Balance | None:
    # Shielded: a cancelled caller (client disconnect, timeout scope) must still get its credit back
    with anyio.CancelScope(shield=True):
        try:
            return await ledger.refund(account_id, GENERATION_COST)
        except DatastoreUnavailableError:
            log.error("credit_refund_failed", account_id=account_id, amount=GENERATION_COST)
            return None


async def generate_section(
    ledger: CreditLedger,
    generator: SectionGenerator,
    account_id: int,
    req: GenerationRequest,
) -> GenerationResult:
    """
    Take the credit first, then call the model.

    Consuming before the call is what authorizes it, so two concurrent
    requests can never both run on the last credit. If the call fails or is
    cancelled the credit is refunded and the original error is raised.
    """
    balance = await ledger.consume(account_id, GENERATION_COST)
    try:
        code = await generator.generate(req.section_type, req.requirements, req.image_descriptions, req.image)
    except BaseException:
        await _refund(ledger, account_id)
        raise
    return GenerationResult(code=code, balance=balance)


def _line(payload: dict) -> bytes:
    return orjson.dumps(payload) + b"\n"


class GenerationStream:
    """
    NDJSON progress stream for a generation whose credit is already consumed.

    The caller consumes before the response starts so that an insufficient
    balance is still an ordinary 402. The credit is kept only once the code
    has been produced; every other ending, including a stream that is never
    iterated, goes through `settle()`, which refunds exactly once.
    """

    def __init__(
        self,
        ledger: CreditLedger,
        generator: SectionGenerator,
        account_id: int,
        req: GenerationRequest,
        balance: Balance,
    ) -> None:
        self.ledger = ledger
        self.generator = generator
        self.account_id = account_id
        self.req = req
        self.balance = balance
        self.settled = False

    async def settle(self) -> Balance | None:
        """Refund unless the generation already completed or was refunded."""
        if self.settled:
            return None
        self.settled = True
        log.info("generation_stream_refund", account_id=self.account_id)
        return await _refund(self.ledger, self.account_id)

    async def lines(self) -> AsyncIterator[bytes]:
        req = self.req
        try:
            yield _line({"status": "generating", "message": "Starting code generation..."})
            try:
                code = await self.generator.generate(
                    req.section_type, req.requirements, req.image_descriptions, req.image
                )
            except AppError as e:
                current = await self.settle() or self.balance
                yield _line(
                    {
                        "status": "error",
                        "code": e.code,
                        "message": e.message,
                        "credits_remaining": current.current,
                        "max_credits": current.max,
                    }
                )
                return
            self.settled = True
            yield _line(
                {
                    "status": "complete",
                    "code": code,
                    "credits_remaining": self.balance.current,
                    "max_credits": self.balance.max,
                }
            )
        finally:
            await self.settle()
