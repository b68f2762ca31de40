"""Request and response models for the water billing API.

Amounts cross this boundary as pesos (``Decimal``, two places); everything
behind it works in centavos.
"""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from utility_billing.services.aggregation_service import AggregatedView, PeriodCell, UnitSlice, YearSummary
from utility_billing.services.bills_service import BillSnapshot, GenerationResult
from utility_billing.services.config_service import BillingConfig
from utility_billing.services.credit_service import CreditHistoryItem
from utility_billing.services.currency import Money
from utility_billing.services.payment_distributor import Allocation, Distribution
from utility_billing.services.payment_service import PaymentResult, ReversalResult

Pesos = Decimal


def pesos(amount: Money) -> Decimal:
    return amount.to_pesos()


# Configuration


class BillingConfigRequest(BaseModel):
    rate_per_m3: Decimal = Field(..., gt=0, decimal_places=2)
    minimum_charge: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    penalty_rate: Decimal = Field(default=Decimal("0.05"), gt=0, decimal_places=4)
    grace_period_days: int = Field(default=10, gt=0)
    compound_penalty: bool = False
    fiscal_year_start_month: int = Field(default=7, ge=1, le=12)
    due_day: int = Field(default=1, ge=1, le=28)

    def to_config(self, client_id: str) -> BillingConfig:
        return BillingConfig(
            client_id=client_id,
            rate_per_m3=Money.from_pesos(self.rate_per_m3),
            minimum_charge=Money.from_pesos(self.minimum_charge),
            penalty_rate=self.penalty_rate,
            grace_period_days=self.grace_period_days,
            compound_penalty=self.compound_penalty,
            fiscal_year_start_month=self.fiscal_year_start_month,
            due_day=self.due_day,
        )


class BillingConfigResponse(BaseModel):
    client_id: str
    rate_per_m3: Pesos
    minimum_charge: Pesos
    penalty_rate: Decimal
    grace_period_days: int
    compound_penalty: bool
    fiscal_year_start_month: int
    due_day: int

    @classmethod
    def from_config(cls, config: BillingConfig) -> "BillingConfigResponse":
        return cls(
            client_id=config.client_id,
            rate_per_m3=pesos(config.rate_per_m3),
            minimum_charge=pesos(config.minimum_charge),
            penalty_rate=config.penalty_rate,
            grace_period_days=config.grace_period_days,
            compound_penalty=config.compound_penalty,
            fiscal_year_start_month=config.fiscal_year_start_month,
            due_day=config.due_day,
        )


# Readings and bills


class ReadingsRequest(BaseModel):
    readings: dict[str, int] = Field(..., description="Cumulative m3 per unit")
    reading_date: date | None = None


class ReadingsResponse(BaseModel):
    fiscal_year: int
    fiscal_month: int
    recorded: int


class GenerateBillsRequest(BaseModel):
    fiscal_year: int
    fiscal_month: int = Field(..., ge=0, le=11)
    opening_balances: dict[str, Decimal] = Field(default_factory=dict)
    regenerate: bool = False


class GenerateBillsResponse(BaseModel):
    period_id: str
    created: list[str]
    skipped_existing: list[str]
    skipped_no_charge: list[str]
    replaced: int

    @classmethod
    def from_result(cls, result: GenerationResult) -> "GenerateBillsResponse":
        return cls(**result._asdict())


class BillResponse(BaseModel):
    unit_id: str
    period_id: str
    label: str
    due_date: date
    consumption: int | None
    base_charge: Pesos
    penalty_amount: Pesos
    previous_balance_carry: Pesos
    total_owed: Pesos
    paid_amount: Pesos
    outstanding: Pesos
    unpaid_penalty: Pesos
    status: str

    @classmethod
    def from_snapshot(cls, bill: BillSnapshot) -> "BillResponse":
        return cls(
            unit_id=bill.unit_id,
            period_id=bill.period_id,
            label=bill.label,
            due_date=bill.due_date,
            consumption=bill.consumption,
            base_charge=pesos(bill.base_charge),
            penalty_amount=pesos(bill.penalty_amount),
            previous_balance_carry=pesos(bill.previous_balance_carry),
            total_owed=pesos(bill.total_owed),
            paid_amount=pesos(bill.paid_amount),
            outstanding=pesos(bill.outstanding),
            unpaid_penalty=pesos(bill.unpaid_penalty),
            status=bill.status.value,
        )


class BillsResponse(BaseModel):
    fiscal_year: int
    fiscal_month: int
    bills: list[BillResponse]


class RecalculatePenaltiesRequest(BaseModel):
    unit_ids: list[str] | None = None
    as_of: date | None = None


class RecalculatePenaltiesResponse(BaseModel):
    as_of: date
    processed_bills: int
    updated_bills: int
    skipped_paid_bills: int
    skipped_out_of_scope_bills: int
    total_penalties: Pesos
    credit_released: Pesos


class PenaltySummaryResponse(BaseModel):
    as_of: date
    total_penalties: Pesos
    unpaid_bills: int


# Credit


class CreditEntryResponse(BaseModel):
    id: int
    timestamp: datetime
    amount: Pesos
    balance_after: Pesos
    reason: str
    transaction_ref: str | None
    note: str | None
    reverses_entry_id: int | None

    @classmethod
    def from_item(cls, item: CreditHistoryItem) -> "CreditEntryResponse":
        return cls(
            id=item.id,
            timestamp=item.timestamp,
            amount=pesos(item.amount),
            balance_after=pesos(item.balance_after),
            reason=item.reason.value,
            transaction_ref=item.transaction_ref,
            note=item.note,
            reverses_entry_id=item.reverses_entry_id,
        )


class CreditResponse(BaseModel):
    unit_id: str
    balance: Pesos
    history: list[CreditEntryResponse]


class CreditAdjustRequest(BaseModel):
    amount: Decimal = Field(..., decimal_places=2, description="Positive adds, negative removes")
    transaction_ref: str = Field(..., min_length=1)
    note: str | None = None


class UnpaidBillsResponse(BaseModel):
    unit_id: str
    bills: list[BillResponse]
    total_due: Pesos
    credit_balance: Pesos
    credit_history: list[CreditEntryResponse]


# Payments


class PaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    unit_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    payment_date: date = Field(..., alias="date")
    transaction_ref: str = Field(..., min_length=1)
    payment_method: str = "cash"
    notes: str | None = None


class PreviewRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    unit_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    payment_date: date | None = Field(default=None, alias="date")


class AllocationResponse(BaseModel):
    period_id: str
    amount: Pesos
    cash: Pesos
    credit: Pesos
    carry: Pesos
    base: Pesos
    penalty: Pesos
    status_after: str
    remaining_after: Pesos

    @classmethod
    def from_allocation(cls, allocation: Allocation) -> "AllocationResponse":
        return cls(
            period_id=allocation.period_id,
            amount=pesos(allocation.amount),
            cash=pesos(allocation.cash),
            credit=pesos(allocation.credit),
            carry=pesos(allocation.carry),
            base=pesos(allocation.base),
            penalty=pesos(allocation.penalty),
            status_after=allocation.status_after.value,
            remaining_after=pesos(allocation.remaining_after),
        )


class PreviewResponse(BaseModel):
    unit_id: str
    payment: Pesos
    available_credit: Pesos
    outcome: str
    allocations: list[AllocationResponse]
    total_allocated: Pesos
    credit_consumed: Pesos
    credit_created: Pesos
    remaining_credit: Pesos
    remaining_due: Pesos

    @classmethod
    def from_distribution(cls, distribution: Distribution) -> "PreviewResponse":
        return cls(
            unit_id=distribution.unit_id,
            payment=pesos(distribution.payment),
            available_credit=pesos(distribution.available_credit),
            outcome=distribution.outcome.value,
            allocations=[AllocationResponse.from_allocation(a) for a in distribution.allocations],
            total_allocated=pesos(distribution.total_allocated),
            credit_consumed=pesos(distribution.credit_consumed),
            credit_created=pesos(distribution.credit_created),
            remaining_credit=pesos(distribution.remaining_credit),
            remaining_due=pesos(distribution.remaining_due),
        )


class PaymentResponse(BaseModel):
    transaction_ref: str
    unit_id: str
    payment_date: date
    amount: Pesos
    outcome: str
    allocations: list[AllocationResponse]
    new_bill_statuses: dict[str, str]
    credit_consumed: Pesos
    credit_created: Pesos
    new_credit_balance: Pesos
    notes: str | None
    duplicate: bool

    @classmethod
    def from_result(cls, result: PaymentResult) -> "PaymentResponse":
        return cls(
            transaction_ref=result.transaction_ref,
            unit_id=result.unit_id,
            payment_date=result.payment_date,
            amount=pesos(result.amount),
            outcome=result.outcome.value,
            allocations=[AllocationResponse.from_allocation(a) for a in result.allocations],
            new_bill_statuses={k: v.value for k, v in result.new_bill_statuses.items()},
            credit_consumed=pesos(result.credit_consumed),
            credit_created=pesos(result.credit_created),
            new_credit_balance=pesos(result.new_credit_balance),
            notes=result.notes,
            duplicate=result.duplicate,
        )


class ReversalResponse(BaseModel):
    transaction_ref: str
    unit_id: str
    restored_bills: dict[str, str]
    credit_change: Pesos
    new_credit_balance: Pesos

    @classmethod
    def from_result(cls, result: ReversalResult) -> "ReversalResponse":
        return cls(
            transaction_ref=result.transaction_ref,
            unit_id=result.unit_id,
            restored_bills={k: v.value for k, v in result.restored_bills.items()},
            credit_change=pesos(result.credit_change),
            new_credit_balance=pesos(result.new_credit_balance),
        )


class PaymentHistoryItem(BaseModel):
    transaction_ref: str
    payment_date: date
    amount: Pesos
    credit_consumed: Pesos
    credit_created: Pesos
    credit_balance_after: Pesos
    outcome: str
    payment_method: str
    status: str
    notes: str | None


class PaymentHistoryResponse(BaseModel):
    unit_id: str
    payments: list[PaymentHistoryItem]


# Aggregated view


class PeriodHeader(BaseModel):
    period_id: str
    label: str


class CellResponse(BaseModel):
    period_id: str
    label: str
    status: str
    due_date: date | None
    consumption: int | None
    base_charge: Pesos
    penalty_amount: Pesos
    previous_balance_carry: Pesos
    paid_amount: Pesos
    display_due: Pesos
    display_penalties: Pesos
    display_overdue: Pesos
    display_total_due: Pesos

    @classmethod
    def from_cell(cls, cell: PeriodCell) -> "CellResponse":
        return cls(
            period_id=cell.period_id,
            label=cell.label,
            status=cell.status.value,
            due_date=cell.due_date,
            consumption=cell.consumption,
            base_charge=pesos(cell.base_charge),
            penalty_amount=pesos(cell.penalty_amount),
            previous_balance_carry=pesos(cell.previous_balance_carry),
            paid_amount=pesos(cell.paid_amount),
            display_due=pesos(cell.display_due),
            display_penalties=pesos(cell.display_penalties),
            display_overdue=pesos(cell.display_overdue),
            display_total_due=pesos(cell.display_total_due),
        )


class UnitResponse(BaseModel):
    unit_id: str
    credit_balance: Pesos
    total_due: Pesos
    cells: list[CellResponse]

    @classmethod
    def from_slice(cls, unit_slice: UnitSlice) -> "UnitResponse":
        return cls(
            unit_id=unit_slice.unit_id,
            credit_balance=pesos(unit_slice.credit_balance),
            total_due=pesos(unit_slice.total_due),
            cells=[CellResponse.from_cell(c) for c in unit_slice.cells],
        )


class YearSummaryResponse(BaseModel):
    total_billed: Pesos
    total_paid: Pesos
    total_unpaid: Pesos
    total_credit: Pesos
    units_with_overdue: int
    collection_rate: Decimal

    @classmethod
    def from_summary(cls, summary: YearSummary) -> "YearSummaryResponse":
        return cls(
            total_billed=pesos(summary.total_billed),
            total_paid=pesos(summary.total_paid),
            total_unpaid=pesos(summary.total_unpaid),
            total_credit=pesos(summary.total_credit),
            units_with_overdue=summary.units_with_overdue,
            collection_rate=summary.collection_rate,
        )


class AggregatedViewResponse(BaseModel):
    client_id: str
    fiscal_year: int
    periods: list[PeriodHeader]
    units: list[UnitResponse]
    summary: YearSummaryResponse
    built_at: datetime
    updated_at: datetime | None

    @classmethod
    def from_view(cls, view: AggregatedView) -> "AggregatedViewResponse":
        return cls(
            client_id=view.client_id,
            fiscal_year=view.fiscal_year,
            periods=[PeriodHeader(period_id=p.period_id, label=p.label) for p in view.periods],
            units=[UnitResponse.from_slice(s) for s in view.units.values()],
            summary=YearSummaryResponse.from_summary(view.summary),
            built_at=view.built_at,
            updated_at=view.updated_at,
        )
