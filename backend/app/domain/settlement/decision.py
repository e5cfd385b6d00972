"""
Settlement Decision Procedure (Domain Logic).

Pure function from a work order, its evidence, the pricing configuration,
the municipality discount confirmation and the technicians' pay profiles
to a settlement decision. No I/O happens here; the settlement service
loads the inputs and persists the result.

Order of checks (first failure wins):
1. Work order exists
2. Work order completed and verified (otherwise not eligible, no write)
3. Evidence exists
4. Evidence has a customer status
5. Financial settings exist
6. Base price configured for the customer status
7. Municipality discount confirmed (otherwise pending confirmation)
8. Discount and final price
9. At least one technician assigned
10. Earnings per technician, with salary cap accounting
11. Totals and company profit
"""

import enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from backend.app.models.finance_enums import CustomerStatus, FailureReason, PaymentType


class DecisionKind(str, enum.Enum):
    TRANSACTION = "TRANSACTION"
    FAILURE = "FAILURE"
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
    NOT_ELIGIBLE = "NOT_ELIGIBLE"


class SplitPolicy(str, enum.Enum):
    """Earnings of a technician who has no price list at all."""
    EVEN = "even"  # Equal share of the final price
    STRICT = "strict"  # Treated as missing technician pricing


@dataclass
class TechnicianEarning:
    technician_id: int
    name: str
    payment_type: PaymentType
    nominal_earnings: float
    earnings: float
    cash_payout: float
    monthly_salary: float = 0.0
    earned_towards_salary: float = 0.0
    previously_earned: float = 0.0
    exceeded_salary: bool = False
    excess_amount: float = 0.0


@dataclass
class SettlementComputation:
    customer_status: CustomerStatus
    municipality: str
    base_price: float
    discount_percent: float
    discount_amount: float
    final_price: float
    technicians: List[TechnicianEarning]
    total_technician_earnings: float
    company_profit: float

    @property
    def total_cash_payout(self) -> float:
        return sum(t.cash_payout for t in self.technicians)

    @property
    def total_excess(self) -> float:
        return sum(t.excess_amount for t in self.technicians)


@dataclass
class SettlementFailure:
    reason: FailureReason
    message: str
    missing_fields: List[Dict[str, str]] = field(default_factory=list)
    pending_municipality: Optional[str] = None
    suggested_discount: float = 0.0

    @property
    def requires_admin_action(self) -> bool:
        return self.reason == FailureReason.PENDING_DISCOUNT_CONFIRMATION


@dataclass
class SettlementDecision:
    kind: DecisionKind
    computation: Optional[SettlementComputation] = None
    failure: Optional[SettlementFailure] = None
    work_order_details: Dict = field(default_factory=dict)
    message: str = ""


def missing_field(field_name: str, description: str) -> Dict[str, str]:
    return {"field": field_name, "description": description}


def as_amount(value, what: str) -> float:
    """Coerce a configured amount to float, rejecting negatives and garbage."""
    amount = float(value)
    if amount != amount or amount < 0:
        raise ValueError(f"Invalid {what}: {value!r}")
    return amount


def accrue_towards_salary(
    nominal: float,
    monthly_salary: float,
    previously_earned: float,
    digits: int = 2,
):
    """
    Split a fixed-salary technician's job earnings at the monthly cap.

    Returns (earned_towards_salary, excess_amount, exceeded_salary).
    The two amounts always add up to nominal.

    >>> accrue_towards_salary(5000, 50000, 48000)
    (2000.0, 3000.0, True)
    """
    headroom = max(monthly_salary - previously_earned, 0.0)
    if previously_earned >= monthly_salary:
        return 0.0, round(nominal, digits), True

    earned = round(min(nominal, headroom), digits)
    excess = round(nominal - earned, digits)
    return earned, excess, excess > 0


def work_order_snapshot(work_order, technicians=(), customer_status=None) -> Dict:
    """Identifying details of a work order, stored on failure records."""
    if work_order is None:
        return {}
    return {
        "tis_job_id": work_order.tis_job_id,
        "address": work_order.address,
        "municipality": work_order.municipality,
        "technician_names": [t.name for t in technicians],
        "customer_status": customer_status,
        "status": work_order.status.value if work_order.status else None,
        "verified": bool(work_order.verified),
    }


def failure_decision(
    reason: FailureReason, message: str, details: Dict, missing_fields=None, **extra
) -> SettlementDecision:
    failure = SettlementFailure(reason=reason, message=message, missing_fields=missing_fields or [], **extra)
    kind = DecisionKind.PENDING_CONFIRMATION if failure.requires_admin_action else DecisionKind.FAILURE
    return SettlementDecision(kind=kind, failure=failure, work_order_details=details, message=message)


def resolve_discount_percent(settings, confirmation, municipality: str):
    """
    Discount to apply for a municipality.

    Returns (percent, suggested) where percent is None when the configured
    discount still waits for admin confirmation; suggested is the
    configured value in that case.
    """
    if confirmation is not None and confirmation.confirmed:
        return as_amount(confirmation.discount_percent, "confirmed discount"), 0.0

    configured = as_amount(settings.municipality_discount(municipality), "municipality discount")
    if configured > 0:
        return None, configured
    return 0.0, 0.0


def decide_settlement(
    work_order,
    evidence,
    settings,
    confirmation,
    technicians: List,
    previously_earned: Optional[Dict[int, float]] = None,
    split_policy: SplitPolicy = SplitPolicy.EVEN,
    digits: int = 2,
) -> SettlementDecision:
    """
    Decide how a work order settles.

    Args:
        work_order: WorkOrder or None when it does not exist
        evidence: WorkOrderEvidence or None
        settings: FinancialSettings or None
        confirmation: MunicipalityDiscountConfirmation for the work order's
            municipality, or None
        technicians: Technician rows for the assigned ids, in assignment order
        previously_earned: technician id -> salary accrual earlier this month
        split_policy: how to price technicians without a price list
        digits: rounding of money amounts

    Returns:
        SettlementDecision

    Raises:
        ValueError/TypeError on malformed numeric configuration; the caller
        records those as OTHER_ERROR.
    """
    previously_earned = previously_earned or {}

    # 1. Work order
    if work_order is None:
        return failure_decision(
            FailureReason.WORK_ORDER_NOT_FOUND,
            "Work order not found",
            {},
            [missing_field("workOrderId", "Work order does not exist")],
        )

    details = work_order_snapshot(work_order, technicians)

    # 2. Eligibility
    if not work_order.is_eligible_for_settlement:
        return SettlementDecision(
            kind=DecisionKind.NOT_ELIGIBLE,
            work_order_details=details,
            message="Work order is not completed and verified",
        )

    # 3. Evidence
    if evidence is None:
        return failure_decision(
            FailureReason.MISSING_WORK_ORDER_EVIDENCE,
            "No evidence record found for this work order",
            details,
            [missing_field("workOrderEvidence", "Evidence record for the work order")],
        )

    # 4. Customer status
    raw_status = (evidence.customer_status or "").strip()
    details["customer_status"] = raw_status or None
    customer_status = CustomerStatus.parse(raw_status)
    if customer_status is None:
        description = "Customer status is not set on the evidence record"
        if raw_status:
            description = f"Unknown customer status: {raw_status}"
        return failure_decision(
            FailureReason.MISSING_CUSTOMER_STATUS,
            "Customer status is missing from the evidence record",
            details,
            [missing_field("customerStatus", description)],
        )

    # 5. Settings
    if settings is None:
        return failure_decision(
            FailureReason.MISSING_FINANCIAL_SETTINGS,
            "Financial settings are not configured",
            details,
            [missing_field("financialSettings", "Pricing configuration")],
        )

    # 6. Base price
    configured_price = settings.base_price(customer_status)
    base_price = as_amount(configured_price, "base price") if configured_price is not None else 0.0
    if base_price == 0:
        return failure_decision(
            FailureReason.NO_PRICE_FOR_CUSTOMER_STATUS,
            f"No price set for service type: {customer_status.label}",
            details,
            [missing_field(f"pricesByCustomerStatus.{customer_status.value}", f"Price for {customer_status.label}")],
        )

    # 7. Discount gate
    municipality = work_order.municipality
    discount_percent, suggested = resolve_discount_percent(settings, confirmation, municipality)
    if discount_percent is None:
        return failure_decision(
            FailureReason.PENDING_DISCOUNT_CONFIRMATION,
            f"Discount of {suggested}% for municipality '{municipality}' is waiting for admin confirmation",
            details,
            [missing_field("discountConfirmation", f"Confirmation of the discount for {municipality}")],
            pending_municipality=municipality,
            suggested_discount=suggested,
        )
    if discount_percent > 100:
        raise ValueError(f"Discount percent out of range: {discount_percent}")

    # 8. Price after discount
    discount_amount = round(base_price * discount_percent / 100, digits)
    final_price = round(max(base_price - discount_amount, 0.0), digits)

    # 9. Technicians
    if not technicians:
        return failure_decision(
            FailureReason.NO_TECHNICIANS_ASSIGNED,
            "No technicians are assigned to this work order",
            details,
            [missing_field("technicianId", "At least one assigned technician")],
        )

    # 10. Earnings
    earnings: List[TechnicianEarning] = []
    missing_pricing = []
    even_share = round(final_price / len(technicians), digits)

    for tech in technicians:
        price_list = settings.technician_price_list(tech.id)
        if price_list is not None:
            configured = price_list.get(customer_status.value)
            nominal = as_amount(configured, "technician price") if configured is not None else 0.0
            if nominal == 0:
                missing_pricing.append(tech)
                continue
        elif split_policy == SplitPolicy.EVEN:
            nominal = even_share
        else:
            missing_pricing.append(tech)
            continue

        if tech.payment_type == PaymentType.FIXED_SALARY:
            monthly_salary = as_amount(tech.monthly_salary or 0, "monthly salary")
            before = round(previously_earned.get(tech.id, 0.0), digits)
            towards, excess, exceeded = accrue_towards_salary(nominal, monthly_salary, before, digits)
            earnings.append(TechnicianEarning(
                technician_id=tech.id,
                name=tech.name,
                payment_type=PaymentType.FIXED_SALARY,
                nominal_earnings=nominal,
                earnings=towards,
                cash_payout=0.0,
                monthly_salary=monthly_salary,
                earned_towards_salary=towards,
                previously_earned=before,
                exceeded_salary=exceeded,
                excess_amount=excess,
            ))
        else:
            earnings.append(TechnicianEarning(
                technician_id=tech.id,
                name=tech.name,
                payment_type=PaymentType.PER_JOB,
                nominal_earnings=nominal,
                earnings=nominal,
                cash_payout=nominal,
            ))

    if missing_pricing:
        names = ", ".join(t.name for t in missing_pricing)
        return failure_decision(
            FailureReason.MISSING_TECHNICIAN_PRICING,
            f"No technician price for {customer_status.label}: {names}",
            details,
            [
                missing_field(f"technicianPrices.{t.id}", f"Price of {t.name} for {customer_status.label}")
                for t in missing_pricing
            ],
        )

    # 11. Totals
    total_earnings = round(sum(e.earnings for e in earnings), digits)
    company_profit = round(final_price - total_earnings, digits)

    computation = SettlementComputation(
        customer_status=customer_status,
        municipality=municipality,
        base_price=base_price,
        discount_percent=discount_percent,
        discount_amount=discount_amount,
        final_price=final_price,
        technicians=earnings,
        total_technician_earnings=total_earnings,
        company_profit=company_profit,
    )
    return SettlementDecision(
        kind=DecisionKind.TRANSACTION,
        computation=computation,
        work_order_details=details,
        message="Settlement computed",
    )
