"""Buyer-facing payment endpoints."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator, model_validator

from planpay.api.auth import Principal, require_principal
from planpay.api.dependencies import PaymentDependencies, get_deps
from planpay.api.middleware.exceptions import failure_response
from planpay.errors import Failure
from planpay.models import PaymentMethod, PaymentUrls

router = APIRouter(dependencies=[Depends(require_principal)])


# Request Models
class CreateOrderRequest(BaseModel):
    plan_id: str = Field(min_length=1)
    method: PaymentMethod
    chain_id: Optional[int] = None
    token: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method(cls, v):
        if isinstance(v, str):
            return v.strip().upper().replace("-", "_")
        return v

    @model_validator(mode="after")
    def require_chain_for_onchain(self) -> "CreateOrderRequest":
        if self.method is PaymentMethod.ONCHAIN and self.chain_id is None:
            raise ValueError("chain_id is required for ONCHAIN payments")
        return self


class RefundRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class VerifyRequest(BaseModel):
    order_id: str = Field(min_length=1)
    tx_hash: str = Field(min_length=1)
    from_address: str = Field(min_length=1)


class PriceRequest(BaseModel):
    currency: str = Field(min_length=1)
    fiat_amount: int = Field(gt=0, description="Amount in fiat minor units (cents)")
    chain_id: int = 1


@router.post("/orders", status_code=status.HTTP_200_OK)
async def create_order(
    body: CreateOrderRequest,
    request: Request,
    deps: PaymentDependencies = Depends(get_deps),
    principal: Principal = Depends(require_principal),
):
    """Create an order for a plan and return the provider artifact the buyer acts on."""
    result = await deps.orchestrator.create_order(
        plan_id=body.plan_id,
        user_id=principal.user_id,
        method=body.method,
        urls=PaymentUrls(return_url=body.return_url, cancel_url=body.cancel_url),
        chain_id=body.chain_id,
        token=body.token,
    )
    if isinstance(result, Failure):
        return failure_response(result, request)
    return result.to_dict()


@router.get("/orders")
async def list_orders(
    request: Request,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    deps: PaymentDependencies = Depends(get_deps),
    principal: Principal = Depends(require_principal),
):
    result = await deps.orchestrator.list_orders(principal.user_id, status_filter, page, limit)
    if isinstance(result, Failure):
        return failure_response(result, request)
    return result.to_dict()


@router.get("/orders/{order_id}")
async def get_order(
    order_id: str,
    request: Request,
    deps: PaymentDependencies = Depends(get_deps),
    principal: Principal = Depends(require_principal),
):
    result = await deps.orchestrator.query_status(order_id=order_id, user_id=principal.user_id)
    if isinstance(result, Failure):
        return failure_response(result, request)
    return result.to_dict()


@router.post("/orders/{order_id}/reconcile")
async def reconcile_order(
    order_id: str,
    request: Request,
    deps: PaymentDependencies = Depends(get_deps),
    principal: Principal = Depends(require_principal),
):
    """Poll the provider for an order whose notification never arrived."""
    result = await deps.orchestrator.reconcile(order_id, user_id=principal.user_id)
    if isinstance(result, Failure):
        return failure_response(result, request)
    return result.to_dict()


@router.post("/orders/{order_id}/refund")
async def refund_order(
    order_id: str,
    request: Request,
    body: Optional[RefundRequest] = None,
    deps: PaymentDependencies = Depends(get_deps),
    principal: Principal = Depends(require_principal),
):
    """
    Request a full refund of a paid order.

    The order stays PAID until the provider confirms the refund.
    """
    result = await deps.orchestrator.request_refund(
        order_id,
        user_id=principal.user_id,
        reason=body.reason if body else None,
    )
    if isinstance(result, Failure):
        return failure_response(result, request)
    return result.to_dict()


@router.post("/verify")
async def verify_payment(
    body: VerifyRequest,
    deps: PaymentDependencies = Depends(get_deps),
    principal: Principal = Depends(require_principal),
):
    """
    Verify an on-chain transfer against an order.

    Below the confirmation threshold the response is a partial success
    (``success: true, confirmed: false``); call again later.
    """
    result = await deps.orchestrator.verify_onchain(
        order_id=body.order_id,
        tx_hash=body.tx_hash,
        from_address=body.from_address,
        user_id=principal.user_id,
    )
    status_code = status.HTTP_200_OK if result.failure is None else result.failure.http_status
    return JSONResponse(status_code=status_code, content=result.to_dict())


@router.post("/price")
async def get_price(
    body: PriceRequest,
    request: Request,
    deps: PaymentDependencies = Depends(get_deps),
):
    result = await deps.orchestrator.quote(body.currency, body.fiat_amount, body.chain_id)
    if isinstance(result, Failure):
        return failure_response(result, request)
    return {"success": True, **result.to_dict()}


@router.get("/transactions/{tx_hash}")
async def get_transaction(
    tx_hash: str,
    request: Request,
    deps: PaymentDependencies = Depends(get_deps),
    principal: Principal = Depends(require_principal),
):
    result = await deps.orchestrator.get_transaction(tx_hash, user_id=principal.user_id)
    if isinstance(result, Failure):
        return failure_response(result, request)
    return result


@router.get("/user/benefits")
async def list_benefits(
    active_only: bool = Query(default=True),
    deps: PaymentDependencies = Depends(get_deps),
    principal: Principal = Depends(require_principal),
):
    items = await deps.orchestrator.list_entitlements(principal.user_id, active_only=active_only)
    return {"items": items, "total": len(items)}


@router.get("/user/points")
async def get_points(
    deps: PaymentDependencies = Depends(get_deps),
    principal: Principal = Depends(require_principal),
):
    points = await deps.orchestrator.get_points(principal.user_id)
    return {"user_id": principal.user_id, "points": points}


@router.get("/networks")
async def list_networks(deps: PaymentDependencies = Depends(get_deps)):
    networks = await deps.orchestrator.network_status()
    return {"networks": networks}
