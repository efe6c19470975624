"""Orchestrator module for planning and reconciliation."""

from stratus_deploy.orchestrator.dependency_graph import DependencyGraph, DependencyNode, Direction
from stratus_deploy.orchestrator.planner import (
    ChangeType,
    Plan,
    PlanStep,
    Planner,
    decide_change,
)
from stratus_deploy.orchestrator.executor import (
    NodeResult,
    NodeState,
    ProgressCallback,
    ReconciliationExecutor,
    RunSummary,
)
from stratus_deploy.orchestrator.orchestrator import DeploymentOrchestrator, RefreshResult

__all__ = [
    # Dependency graph
    'DependencyGraph',
    'DependencyNode',
    'Direction',

    # Planning
    'ChangeType',
    'Plan',
    'PlanStep',
    'Planner',
    'decide_change',

    # Execution
    'NodeResult',
    'NodeState',
    'ProgressCallback',
    'ReconciliationExecutor',
    'RunSummary',

    # Main orchestrator
    'DeploymentOrchestrator',
    'RefreshResult',
]
