"""Leaf ledgers: quota counters, credit lots and the job registry."""

from metergate_core.ledger.credit_ledger import CreditLedger, CreditLot, LotDeduction, LotGrant, expire_due_lots
from metergate_core.ledger.job_registry import ChargeMode, ChargeState, Job, JobRegistry, JobStatus
from metergate_core.ledger.quota_ledger import QuotaLedger, QuotaStatus, billing_period

__all__ = [
    "ChargeMode",
    "ChargeState",
    "CreditLedger",
    "CreditLot",
    "Job",
    "JobRegistry",
    "JobStatus",
    "LotDeduction",
    "LotGrant",
    "QuotaLedger",
    "QuotaStatus",
    "billing_period",
    "expire_due_lots",
]
