# Billing Module
# Billing configuration, schedule calculation and installment counts
#
# Components:
# - schemas.py: boundary resolution of item/parent properties
# - schedule.py: BillingScheduleCalculator
# - installments.py: RemainingInstallmentsCalculator

from .schemas import (
    BillableItem,
    BillingConfig,
    ParentRecord,
    resolve_billing_item,
    resolve_parent,
)
from .schedule import (
    BillingScheduleCalculator,
    Interval,
    ScheduleResult,
    interval_for_frequency,
    billing_today,
)
from .installments import (
    RemainingInstallmentsCalculator,
    InstallmentsResult,
    invoice_matches_item,
)
