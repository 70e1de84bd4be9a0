"""jmapc harmonization engine.

Delta detection, reconciliation and the per-account orchestrator, plus
the local write path used by protocol-facing adapters.
"""

from .detector import DeltaDetector, DeltaResult
from .local import LocalChanges
from .orchestrator import Orchestrator
from .reconciler import Action, Decision, Reconciler, classify, decide, plan, resolve_conflict

__all__ = [
    "Action",
    "Decision",
    "DeltaDetector",
    "DeltaResult",
    "LocalChanges",
    "Orchestrator",
    "Reconciler",
    "classify",
    "decide",
    "plan",
    "resolve_conflict",
]
