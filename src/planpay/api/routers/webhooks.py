"""Provider notification sinks.

No bearer auth here: each provider authenticates its notifications with a
signature over the raw request body, checked by the provider's adapter.
A 5xx response asks the provider to retry, so it is only returned when
the settlement could not be committed.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse

from planpay.api.dependencies import PaymentDependencies, get_deps
from planpay.errors import ErrorKind, Failure
from planpay.models import PaymentMethod, RejectedSignature

logger = logging.getLogger("planpay.api.webhooks")

router = APIRouter()


@router.post("/card")
async def card_webhook(request: Request, deps: PaymentDependencies = Depends(get_deps)):
    raw = await request.body()
    try:
        result = await deps.orchestrator.handle_inbound(PaymentMethod.CARD, raw, request.headers)
    except Exception:
        logger.exception("Card notification could not be applied")
        return PlainTextResponse("error", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    if isinstance(result, RejectedSignature):
        return PlainTextResponse("invalid signature", status_code=status.HTTP_400_BAD_REQUEST)
    if isinstance(result, Failure):
        code = (
            status.HTTP_500_INTERNAL_SERVER_ERROR
            if result.kind is ErrorKind.INTERNAL
            else status.HTTP_400_BAD_REQUEST
        )
        return PlainTextResponse(result.message, status_code=code)
    return PlainTextResponse("ok")


@router.post("/crypto-exchange")
async def crypto_exchange_webhook(request: Request, deps: PaymentDependencies = Depends(get_deps)):
    raw = await request.body()
    try:
        result = await deps.orchestrator.handle_inbound(PaymentMethod.CRYPTO_EXCHANGE, raw, request.headers)
    except Exception:
        logger.exception("Crypto-exchange notification could not be applied")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"returnCode": "FAIL", "returnMessage": "Internal error"},
        )

    if isinstance(result, RejectedSignature):
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"returnCode": "FAIL", "returnMessage": "Invalid signature"},
        )
    if isinstance(result, Failure):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"returnCode": "FAIL", "returnMessage": result.message},
        )
    return {"returnCode": "SUCCESS", "returnMessage": None}
