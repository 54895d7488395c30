"""Orchestrator module for planning, tracking and reconciling stacks."""

from stackrecon.orchestrator.planner import (
    ActionPlan,
    ActionType,
    PlannedAction,
    StateDiffer
)
from stackrecon.orchestrator.tracker import OperationResult, OperationTracker
from stackrecon.orchestrator.engine import (
    InFlightGuard,
    ReconcilePhase,
    ReconcileResult,
    ReconciliationEngine
)

__all__ = [
    # Planning
    'ActionPlan',
    'ActionType',
    'PlannedAction',
    'StateDiffer',

    # Tracking
    'OperationResult',
    'OperationTracker',

    # Reconciliation
    'InFlightGuard',
    'ReconcilePhase',
    'ReconcileResult',
    'ReconciliationEngine',
]
