from typing import Annotated

from fastapi import APIRouter, Depends, Path, status

from tailor_escrow.api.request_models import EscrowInitializeRequest, PaymentCaptureRequest
from tailor_escrow.api.routers.escrow_runtime import get_escrow_ledger, get_split_policies
from tailor_escrow.api.routers.http_errors import raise_escrow_http_exception
from tailor_escrow.core.errors import EscrowEngineError
from tailor_escrow.core.escrow import (
    EscrowLedger,
    EscrowReconciliationReport,
    EscrowSplitPolicy,
    EscrowState,
    resolve_split_policy,
)

router = APIRouter(tags=["Escrow Ledger"])

OrderIdPath = Annotated[
    str,
    Path(description="Order identifier owning the escrow.", examples=["ord_001"]),
]


@router.post(
    "/escrow/orders/{order_id}",
    response_model=EscrowState,
    status_code=status.HTTP_201_CREATED,
    summary="Initialize Order Escrow",
    description=(
        "Splits the order total into deposit, fitting and final shares and opens the ledger "
        "at DEPOSIT. Repeating the call with the same total returns the existing escrow."
    ),
)
def initialize_escrow(
    order_id: OrderIdPath,
    payload: EscrowInitializeRequest,
    ledger: EscrowLedger = Depends(get_escrow_ledger),
    split_policies: dict[str, EscrowSplitPolicy] = Depends(get_split_policies),
) -> EscrowState:
    try:
        policy = resolve_split_policy(order_class=payload.order_class, catalog=split_policies)
        return ledger.initialize(
            order_id=order_id, total_amount=payload.total_amount, split_policy=policy
        )
    except EscrowEngineError as exc:
        raise_escrow_http_exception(exc)


@router.get(
    "/escrow/orders/{order_id}",
    response_model=EscrowState,
    status_code=status.HTTP_200_OK,
    summary="Get Order Escrow",
    description="Returns the escrow state including its append-only stage history.",
)
def get_escrow(
    order_id: OrderIdPath,
    ledger: EscrowLedger = Depends(get_escrow_ledger),
) -> EscrowState:
    try:
        return ledger.get_state(order_id=order_id)
    except EscrowEngineError as exc:
        raise_escrow_http_exception(exc)


@router.post(
    "/escrow/orders/{order_id}/payments",
    response_model=EscrowState,
    status_code=status.HTTP_200_OK,
    summary="Record Payment Capture",
    description=(
        "Records a provider-confirmed capture for the current stage. Replaying a provider "
        "reference with identical data is a no-op. A fully captured deposit is released and "
        "the ledger advances to FITTING."
    ),
)
def record_payment(
    order_id: OrderIdPath,
    payload: PaymentCaptureRequest,
    ledger: EscrowLedger = Depends(get_escrow_ledger),
) -> EscrowState:
    try:
        return ledger.record_payment(
            order_id=order_id,
            stage=payload.stage,
            amount=payload.amount,
            provider_reference=payload.provider_reference,
        )
    except EscrowEngineError as exc:
        raise_escrow_http_exception(exc)


@router.get(
    "/escrow/orders/{order_id}/reconciliation",
    response_model=EscrowReconciliationReport,
    status_code=status.HTTP_200_OK,
    summary="Reconcile Order Escrow",
    description="Re-derives ledger totals from history and reports any invariant violation.",
)
def reconcile_escrow(
    order_id: OrderIdPath,
    ledger: EscrowLedger = Depends(get_escrow_ledger),
) -> EscrowReconciliationReport:
    try:
        return ledger.validate_state(order_id=order_id)
    except EscrowEngineError as exc:
        raise_escrow_http_exception(exc)
