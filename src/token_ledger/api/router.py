from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ..errors import (
    AccountNotFound,
    CollaboratorUnavailable,
    InsufficientFunds,
    IntentNotFound,
    InvalidStateTransition,
)
from ..models.api_models import (
    AccountResponse,
    BalanceResponse,
    ChargeRequest,
    CreditRequest,
    EntryResponse,
    HistoryResponse,
    IntentResponse,
    OpenAccountRequest,
    PaymentNotification,
    PurchaseRequest,
)
from ..models.account import normalize_account_id
from ..models.intent import PurchaseIntent
from ..models.outcomes import PurchaseOutcome, SettlementOutcome


router = APIRouter(prefix="/tokens", tags=["tokens"])


def get_container(request: Request):
    return request.app.state.container


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, InsufficientFunds):
        code = status.HTTP_402_PAYMENT_REQUIRED
    elif isinstance(exc, (AccountNotFound, IntentNotFound)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, InvalidStateTransition):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, CollaboratorUnavailable):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(exc))


def _intent_response(intent: PurchaseIntent) -> IntentResponse:
    return IntentResponse(
        intent_id=intent.id,
        account_id=intent.account_id,
        product_type=intent.product_type,
        status=intent.status,
        amount_required=intent.amount_required,
        amount_to_top_up=intent.amount_to_top_up,
        currency_amount=intent.currency_amount,
        payment_reference=intent.payment_reference,
        expires_at=intent.expires_at,
    )


@router.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
async def open_account(payload: OpenAccountRequest, container=Depends(get_container)) -> AccountResponse:
    try:
        account = await container.ledger.open_account(
            payload.account_id,
            display_name=payload.display_name,
            display_reference=payload.display_reference,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return AccountResponse(
        account_id=account.id,
        display_name=account.display_name,
        display_reference=account.display_reference,
        balance=account.balance,
    )


@router.get("/balance/{account_id}", response_model=BalanceResponse)
async def get_balance(account_id: str, container=Depends(get_container)) -> BalanceResponse:
    balance = await container.ledger.get_balance(account_id)
    return BalanceResponse(account_id=normalize_account_id(account_id), balance=balance)


@router.get("/history/{account_id}", response_model=HistoryResponse)
async def get_history(
    account_id: str,
    limit: int = Query(50, ge=1, le=500),
    container=Depends(get_container),
) -> HistoryResponse:
    entries = await container.ledger.get_history(account_id, limit=limit)
    return HistoryResponse(
        account_id=normalize_account_id(account_id),
        entries=[EntryResponse(**entry.model_dump()) for entry in entries],
    )


@router.post("/credit", response_model=BalanceResponse)
async def credit(payload: CreditRequest, container=Depends(get_container)) -> BalanceResponse:
    try:
        result = await container.ledger.credit(
            payload.account_id,
            payload.amount,
            payload.category,
            description=payload.description or "",
            origin=payload.origin,
            reference=payload.reference,
        )
    except (AccountNotFound, CollaboratorUnavailable, ValueError) as exc:
        raise _http_error(exc) from exc
    return BalanceResponse(account_id=result.account_id, balance=result.new_balance)


@router.post("/charge", response_model=BalanceResponse)
async def charge(payload: ChargeRequest, container=Depends(get_container)) -> BalanceResponse:
    try:
        result = await container.ledger.charge(
            payload.account_id,
            payload.amount,
            category=payload.category,
            description=payload.description or "",
            origin=payload.origin,
            reference=payload.reference,
        )
    except (AccountNotFound, CollaboratorUnavailable, ValueError) as exc:
        raise _http_error(exc) from exc
    return BalanceResponse(account_id=result.account_id, balance=result.new_balance)


@router.post("/purchase", response_model=PurchaseOutcome)
async def purchase(payload: PurchaseRequest, container=Depends(get_container)) -> PurchaseOutcome:
    try:
        return await container.orchestrator.request_purchase(
            payload.account_id,
            payload.product_type,
            payload.product_data,
            payload.price,
            extra_top_up=payload.extra_top_up,
            display_reference=payload.display_reference,
        )
    except CollaboratorUnavailable as exc:
        raise _http_error(exc) from exc


@router.post("/webhook/payment", response_model=SettlementOutcome)
async def payment_webhook(
    payload: PaymentNotification, container=Depends(get_container)
) -> SettlementOutcome:
    # Every outcome answers 200; only a retryable failure asks for redelivery.
    try:
        return await container.orchestrator.on_payment_confirmed(
            payload.reference, amount=payload.amount
        )
    except CollaboratorUnavailable as exc:
        raise _http_error(exc) from exc


@router.get("/intents/{intent_id}", response_model=IntentResponse)
async def get_intent(intent_id: str, container=Depends(get_container)) -> IntentResponse:
    intent = await container.intents.get(intent_id)
    if intent is None:
        raise _http_error(IntentNotFound(intent_id))
    return _intent_response(intent)


@router.post("/intents/{intent_id}/cancel", response_model=IntentResponse)
async def cancel_intent(intent_id: str, container=Depends(get_container)) -> IntentResponse:
    try:
        intent = await container.intents.cancel(intent_id)
    except (IntentNotFound, InvalidStateTransition) as exc:
        raise _http_error(exc) from exc
    return _intent_response(intent)
