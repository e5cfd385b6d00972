"""
Finance Schemas.

Request and response models for the finance admin API.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List, Dict, Any
from backend.app.models.finance_enums import FailureReason, PaymentType, SettlementOutcome


# --- Settings ---

class MunicipalityDiscount(BaseModel):
    municipality: str = Field(..., min_length=1, max_length=255)
    discount_percent: float = Field(..., ge=0, le=100)


class TechnicianPriceList(BaseModel):
    technician_id: int
    prices_by_customer_status: Dict[str, float] = Field(default_factory=dict)


class FinancialSettingsUpdate(BaseModel):
    """Partial update: omitted sections are left as they are."""
    prices_by_customer_status: Optional[Dict[str, float]] = None
    discounts_by_municipality: Optional[List[MunicipalityDiscount]] = None
    technician_prices: Optional[List[TechnicianPriceList]] = None


class FinancialSettingsResponse(BaseModel):
    id: int
    prices_by_customer_status: Dict[str, float]
    discounts_by_municipality: List[MunicipalityDiscount]
    technician_prices: List[TechnicianPriceList]
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class CustomerStatusOption(BaseModel):
    value: str
    label: str


class TechnicianResponse(BaseModel):
    id: int
    name: str
    payment_type: PaymentType
    monthly_salary: float

    class Config:
        from_attributes = True


# --- Settlement ---

class MissingField(BaseModel):
    field: str
    description: str


class SettlementResultResponse(BaseModel):
    work_order_id: int
    outcome: SettlementOutcome
    failure_reason: Optional[FailureReason] = None
    message: str = ""
    transaction_id: Optional[int] = None
    missing_fields: List[MissingField] = []


class RecalculationRequest(BaseModel):
    """Work orders to recalculate; all eligible ones when omitted."""
    work_order_ids: Optional[List[int]] = None


class RecalculationReportResponse(BaseModel):
    processed: int
    created: int
    updated: int
    failed: int
    skipped: int
    results: List[SettlementResultResponse]


class FailedTransactionResponse(BaseModel):
    id: int
    work_order_id: int
    failure_reason: FailureReason
    failure_message: str
    missing_fields: List[MissingField]
    work_order_details: Dict[str, Any]
    attempt_count: int
    last_attempt_at: datetime
    resolved: bool
    resolved_at: Optional[datetime]
    pending_municipality: Optional[str]
    suggested_discount: float
    requires_admin_action: bool
    excluded_from_finances: bool
    excluded_at: Optional[datetime]
    excluded_by: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class PendingConfirmationResponse(BaseModel):
    municipality: str
    suggested_discount: float
    work_order_ids: List[int]
    count: int


class DiscountConfirmationRequest(BaseModel):
    municipality: str = Field(..., min_length=1, max_length=255)
    discount_percent: float = Field(..., ge=0, le=100)
    work_order_ids: Optional[List[int]] = None


class DiscountConfirmationResponse(BaseModel):
    municipality: str
    discount_percent: float
    confirmed: bool
    confirmed_by: Optional[str]
    confirmed_at: Optional[datetime]
    recalculation: RecalculationReportResponse


# --- Reports ---

class TransactionTechnicianResponse(BaseModel):
    technician_id: int
    name: str
    payment_type: PaymentType
    nominal_earnings: float
    earnings: float
    cash_payout: float
    monthly_salary: float
    earned_towards_salary: float
    previously_earned: float
    exceeded_salary: bool
    excess_amount: float


class TransactionResponse(BaseModel):
    id: int
    work_order_id: int
    tis_job_id: Optional[str]
    customer_status: str
    customer_status_label: str
    municipality: str
    base_price: float
    discount_percent: float
    discount_amount: float
    final_price: float
    total_technician_earnings: float
    company_profit: float
    verified_at: Optional[datetime]
    verified_by: Optional[str]
    technicians: List[TransactionTechnicianResponse]


class ReportSummary(BaseModel):
    total_revenue: float
    total_payouts: float
    total_cash_payouts: float
    total_profit: float
    total_discounts: float
    total_salary_excess: float
    transactions_count: int


class TechnicianStats(BaseModel):
    technician_id: int
    name: str
    work_orders_count: int
    total_earnings: float
    total_cash_payout: float
    earned_towards_salary: float
    excess_amount: float


class Pagination(BaseModel):
    page: int
    page_size: int
    total: int
    pages: int


class FinanceReportResponse(BaseModel):
    summary: ReportSummary
    technician_stats: List[TechnicianStats]
    transactions: List[TransactionResponse]
    pagination: Pagination


# --- Work orders ---

class WorkOrderVerifyResponse(BaseModel):
    work_order_id: int
    verified: bool
    verified_at: Optional[datetime]
    settlement: SettlementResultResponse


# --- Audit ---

class AuditLogResponse(BaseModel):
    """Schema for audit log entry."""
    id: int
    actor_id: Optional[int]
    actor_username: Optional[str]
    action: str
    target_type: Optional[str]
    target_id: Optional[str]
    meta_data: Optional[dict]
    timestamp: datetime

    class Config:
        from_attributes = True


class AuditTrailResponse(BaseModel):
    """Schema for audit trail list."""
    logs: List[AuditLogResponse]
    total: int
