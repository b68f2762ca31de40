"""Water billing API endpoints."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from utility_billing.api.dependencies import BillingContext, get_context, get_session
from utility_billing.api.errors import PAYMENT_PREFIX, REVERSAL_PREFIX, to_http_exception
from utility_billing.api.schemas import (
    AggregatedViewResponse,
    BillingConfigRequest,
    BillingConfigResponse,
    BillResponse,
    BillsResponse,
    CreditAdjustRequest,
    CreditEntryResponse,
    CreditResponse,
    GenerateBillsRequest,
    GenerateBillsResponse,
    PaymentHistoryItem,
    PaymentHistoryResponse,
    PaymentRequest,
    PaymentResponse,
    PenaltySummaryResponse,
    PreviewRequest,
    PreviewResponse,
    ReadingsRequest,
    ReadingsResponse,
    RecalculatePenaltiesRequest,
    RecalculatePenaltiesResponse,
    ReversalResponse,
    UnpaidBillsResponse,
    pesos,
)
from utility_billing.errors import BillingError
from utility_billing.services.aggregation_service import AggregationBuilder
from utility_billing.services.bill_store import BillStore
from utility_billing.services.config_service import ConfigService
from utility_billing.services.currency import Money
from utility_billing.services.penalty_service import PenaltyRecalculationService
from utility_billing.services.readings_service import ReadingsService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/water", tags=["water"])


# Configuration


@router.get("/clients/{client_id}/config", response_model=BillingConfigResponse)
async def get_config(
    client_id: str,
    session: AsyncSession = Depends(get_session),  # noqa: B008
) -> BillingConfigResponse:
    try:
        config = await ConfigService(session).get_config(client_id)
    except BillingError as e:
        raise to_http_exception(e) from e
    return BillingConfigResponse.from_config(config)


@router.put("/clients/{client_id}/config", response_model=BillingConfigResponse)
async def put_config(
    client_id: str,
    request: BillingConfigRequest,
    session: AsyncSession = Depends(get_session),  # noqa: B008
    context: BillingContext = Depends(get_context),  # noqa: B008
) -> BillingConfigResponse:
    try:
        config = await ConfigService(session).save_config(request.to_config(client_id))
        await BillStore(session).commit()
    except BillingError as e:
        raise to_http_exception(e) from e
    # Period layout and penalties may have changed
    context.cache.invalidate(client_id)
    return BillingConfigResponse.from_config(config)


# Readings and bills


@router.post(
    "/clients/{client_id}/readings/{fiscal_year}/{fiscal_month}",
    response_model=ReadingsResponse,
)
async def record_readings(
    client_id: str,
    fiscal_year: int,
    fiscal_month: int,
    request: ReadingsRequest,
    session: AsyncSession = Depends(get_session),  # noqa: B008
    context: BillingContext = Depends(get_context),  # noqa: B008
) -> ReadingsResponse:
    try:
        recorded = await ReadingsService(session).record_readings(
            client_id, fiscal_year, fiscal_month, request.readings, request.reading_date
        )
        await BillStore(session).commit()
    except BillingError as e:
        raise to_http_exception(e) from e
    context.cache.invalidate(client_id, fiscal_year)
    return ReadingsResponse(fiscal_year=fiscal_year, fiscal_month=fiscal_month, recorded=recorded)


@router.post("/clients/{client_id}/bills/generate", response_model=GenerateBillsResponse)
async def generate_bills(
    client_id: str,
    request: GenerateBillsRequest,
    context: BillingContext = Depends(get_context),  # noqa: B008
) -> GenerateBillsResponse:
    try:
        opening = {unit: Money.from_pesos(amount) for unit, amount in request.opening_balances.items()}
        result = await context.bills().generate_bills(
            client_id,
            request.fiscal_year,
            request.fiscal_month,
            opening_balances=opening,
            regenerate=request.regenerate,
        )
    except BillingError as e:
        raise to_http_exception(e) from e
    return GenerateBillsResponse.from_result(result)


@router.post(
    "/clients/{client_id}/bills/recalculate-penalties",
    response_model=RecalculatePenaltiesResponse,
)
async def recalculate_penalties(
    client_id: str,
    request: RecalculatePenaltiesRequest,
    context: BillingContext = Depends(get_context),  # noqa: B008
) -> RecalculatePenaltiesResponse:
    try:
        summary = await context.bills().recalculate_penalties(
            client_id, request.as_of, request.unit_ids
        )
    except BillingError as e:
        raise to_http_exception(e) from e
    return RecalculatePenaltiesResponse(
        as_of=summary.as_of,
        processed_bills=summary.processed_bills,
        updated_bills=summary.updated_bills,
        skipped_paid_bills=summary.skipped_paid_bills,
        skipped_out_of_scope_bills=summary.skipped_out_of_scope_bills,
        total_penalties=pesos(summary.total_penalties),
        credit_released=pesos(summary.released_credit),
    )


@router.get("/clients/{client_id}/bills/penalty-summary", response_model=PenaltySummaryResponse)
async def penalty_summary(
    client_id: str,
    session: AsyncSession = Depends(get_session),  # noqa: B008
    context: BillingContext = Depends(get_context),  # noqa: B008
) -> PenaltySummaryResponse:
    summary = await PenaltyRecalculationService(session, context.clock).get_penalty_summary(client_id)
    return PenaltySummaryResponse(
        as_of=summary.as_of,
        total_penalties=pesos(summary.total_penalties),
        unpaid_bills=summary.unpaid_bills,
    )


@router.get("/clients/{client_id}/bills/unpaid/{unit_id}", response_model=UnpaidBillsResponse)
async def unpaid_bills(
    client_id: str,
    unit_id: str,
    context: BillingContext = Depends(get_context),  # noqa: B008
) -> UnpaidBillsResponse:
    try:
        summary = await context.payments().get_unpaid_bills_summary(client_id, unit_id)
    except BillingError as e:
        raise to_http_exception(e) from e
    return UnpaidBillsResponse(
        unit_id=summary.unit_id,
        bills=[BillResponse.from_snapshot(b) for b in summary.bills],
        total_due=pesos(summary.total_due),
        credit_balance=pesos(summary.credit_balance),
        credit_history=[CreditEntryResponse.from_item(i) for i in summary.credit_history],
    )


@router.get(
    "/clients/{client_id}/bills/{fiscal_year}/{fiscal_month}",
    response_model=BillsResponse,
)
async def get_bills(
    client_id: str,
    fiscal_year: int,
    fiscal_month: int,
    context: BillingContext = Depends(get_context),  # noqa: B008
) -> BillsResponse:
    try:
        bills = await context.bills().get_bills(client_id, fiscal_year, fiscal_month)
    except BillingError as e:
        raise to_http_exception(e) from e
    return BillsResponse(
        fiscal_year=fiscal_year,
        fiscal_month=fiscal_month,
        bills=[BillResponse.from_snapshot(b) for b in bills],
    )


# Payments


@router.post("/clients/{client_id}/payments/preview", response_model=PreviewResponse)
async def preview_payment(
    client_id: str,
    request: PreviewRequest,
    context: BillingContext = Depends(get_context),  # noqa: B008
) -> PreviewResponse:
    try:
        distribution = await context.payments().preview_payment(
            client_id, request.unit_id, Money.from_pesos(request.amount), request.payment_date
        )
    except BillingError as e:
        raise to_http_exception(e) from e
    return PreviewResponse.from_distribution(distribution)


@router.post("/clients/{client_id}/payments/record", response_model=PaymentResponse)
async def record_payment(
    client_id: str,
    request: PaymentRequest,
    context: BillingContext = Depends(get_context),  # noqa: B008
) -> PaymentResponse:
    try:
        result = await context.payments().record_payment(
            client_id,
            request.unit_id,
            Money.from_pesos(request.amount),
            request.payment_date,
            request.transaction_ref,
            payment_method=request.payment_method,
            notes=request.notes,
        )
    except BillingError as e:
        logger.warning("Payment %s for %s not recorded: %s", request.transaction_ref, client_id, e)
        raise to_http_exception(e, PAYMENT_PREFIX) from e
    return PaymentResponse.from_result(result)


@router.post(
    "/clients/{client_id}/payments/{transaction_ref}/reverse",
    response_model=ReversalResponse,
)
async def reverse_payment(
    client_id: str,
    transaction_ref: str,
    context: BillingContext = Depends(get_context),  # noqa: B008
) -> ReversalResponse:
    try:
        result = await context.payments().reverse_payment(client_id, transaction_ref)
    except BillingError as e:
        logger.warning("Reversal of %s for %s not applied: %s", transaction_ref, client_id, e)
        raise to_http_exception(e, REVERSAL_PREFIX) from e
    return ReversalResponse.from_result(result)


@router.get(
    "/clients/{client_id}/payments/history/{unit_id}",
    response_model=PaymentHistoryResponse,
)
async def payment_history(
    client_id: str,
    unit_id: str,
    fiscal_year: int | None = None,
    context: BillingContext = Depends(get_context),  # noqa: B008
) -> PaymentHistoryResponse:
    try:
        payments = await context.payments().get_payment_history(client_id, unit_id, fiscal_year)
    except BillingError as e:
        raise to_http_exception(e) from e
    return PaymentHistoryResponse(
        unit_id=unit_id,
        payments=[
            PaymentHistoryItem(
                transaction_ref=p.transaction_ref,
                payment_date=p.payment_date,
                amount=pesos(Money(p.amount)),
                credit_consumed=pesos(Money(p.credit_consumed)),
                credit_created=pesos(Money(p.credit_created)),
                credit_balance_after=pesos(Money(p.credit_balance_after)),
                outcome=p.outcome,
                payment_method=p.payment_method,
                status=p.status,
                notes=p.notes,
            )
            for p in payments
        ],
    )


# Credit


@router.get("/clients/{client_id}/credit/{unit_id}", response_model=CreditResponse)
async def get_credit(
    client_id: str,
    unit_id: str,
    limit: int = 50,
    context: BillingContext = Depends(get_context),  # noqa: B008
) -> CreditResponse:
    try:
        balance, history = await context.payments().get_credit(client_id, unit_id, limit)
    except BillingError as e:
        raise to_http_exception(e) from e
    return CreditResponse(
        unit_id=unit_id,
        balance=pesos(balance),
        history=[CreditEntryResponse.from_item(i) for i in history],
    )


@router.post("/clients/{client_id}/credit/{unit_id}/adjust", response_model=CreditResponse)
async def adjust_credit(
    client_id: str,
    unit_id: str,
    request: CreditAdjustRequest,
    context: BillingContext = Depends(get_context),  # noqa: B008
) -> CreditResponse:
    payments = context.payments()
    try:
        await payments.adjust_credit(
            client_id,
            unit_id,
            Money.from_pesos(request.amount),
            request.transaction_ref,
            request.note,
        )
        balance, history = await payments.get_credit(client_id, unit_id)
    except BillingError as e:
        raise to_http_exception(e) from e
    return CreditResponse(
        unit_id=unit_id,
        balance=pesos(balance),
        history=[CreditEntryResponse.from_item(i) for i in history],
    )


# Aggregated view


@router.get("/clients/{client_id}/aggregated/{fiscal_year}", response_model=AggregatedViewResponse)
async def aggregated_view(
    client_id: str,
    fiscal_year: int,
    session: AsyncSession = Depends(get_session),  # noqa: B008
    context: BillingContext = Depends(get_context),  # noqa: B008
) -> AggregatedViewResponse:
    try:
        view = await AggregationBuilder(session, context.cache).get_view(client_id, fiscal_year)
    except BillingError as e:
        raise to_http_exception(e) from e
    return AggregatedViewResponse.from_view(view)


__all__ = ["router"]
