"""Feature gate orchestration, charge settlement and the worker seam."""

from metergate_core.gate.charges import ChargeCommitter, ChargeOutcome
from metergate_core.gate.feature_gate import (
    ExecuteCommand,
    Failed,
    FeatureGate,
    GateOutcome,
    InProgress,
    NeedConfirmation,
    NeedCredit,
    ProbeMode,
    QuotaProbe,
    Succeeded,
)
from metergate_core.gate.worker import GenerationWorker

__all__ = [
    "ChargeCommitter",
    "ChargeOutcome",
    "ExecuteCommand",
    "Failed",
    "FeatureGate",
    "GateOutcome",
    "GenerationWorker",
    "InProgress",
    "NeedConfirmation",
    "NeedCredit",
    "ProbeMode",
    "QuotaProbe",
    "Succeeded",
]
