"""Reconciliation planner for apply and destroy plans."""

from typing import Any, Callable, Dict, List, Mapping, Optional, Set
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime, timezone

from stratus_deploy.orchestrator.dependency_graph import DependencyGraph, Direction
from stratus_deploy.state.models import StateRecord
from stratus_deploy.template.intrinsics import Reference
from stratus_deploy.template.models import ResourceGraph, ResourceNode
from stratus_deploy.template.resolver import OutputRegistry, Resolver, content_hash
from stratus_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class ChangeType(Enum):
    """Type of change for a resource."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NO_CHANGE = "no_change"


@dataclass
class PlanStep:
    """Planned operation for one node."""

    node_id: str
    change_type: ChangeType
    resource_type: str
    reason: Optional[str] = None
    node: Optional[ResourceNode] = None
    current_record: Optional[StateRecord] = None
    content_hash: Optional[str] = None
    deferred: Set[Reference] = field(default_factory=set)  # Outputs known only after dependencies apply
    replaces: Optional[str] = None  # Provider id of a record of another type under this id


@dataclass
class Plan:
    """Ordered reconciliation plan.

    Forward steps (create, update, no-op) come first in dependency order,
    followed by delete steps with dependents ahead of their dependencies.
    ``delete_blockers`` maps a removed node to the surviving nodes whose
    stored records still reference it; it is deleted only once they apply.
    """

    steps: List[PlanStep]
    dependency_graph: DependencyGraph
    delete_graph: DependencyGraph
    delete_blockers: Dict[str, Set[str]] = field(default_factory=dict)
    parameters: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def forward_steps(self) -> List[PlanStep]:
        return [step for step in self.steps if step.change_type != ChangeType.DELETE]

    def delete_steps(self) -> List[PlanStep]:
        return [step for step in self.steps if step.change_type == ChangeType.DELETE]

    def get_step(self, node_id: str) -> Optional[PlanStep]:
        for step in self.steps:
            if step.node_id == node_id:
                return step
        return None

    def get_waves(self) -> Dict[str, int]:
        """Wave number of each step, starting at 1.

        Steps sharing a wave do not depend on each other. Delete waves follow
        the forward waves and run dependents first.
        """
        forward = self.dependency_graph.get_waves()
        deletes = list(reversed(self.delete_graph.get_waves()))
        return {
            node_id: index
            for index, wave in enumerate(forward + deletes, 1)
            for node_id in wave
        }

    def has_changes(self) -> bool:
        """Check if the plan does anything besides no-ops, counting pending replacements."""
        return any(
            step.change_type != ChangeType.NO_CHANGE
            or (step.current_record is not None and step.current_record.replaced)
            for step in self.steps
        )

    def get_summary(self) -> Dict[str, int]:
        """Get a summary of steps by change type."""
        summary = {change_type.value: 0 for change_type in ChangeType}
        for step in self.steps:
            summary[step.change_type.value] += 1
        return summary


def decide_change(
    node: ResourceNode,
    record: Optional[StateRecord],
    digest: str,
    deferred: Optional[Set[Reference]] = None
) -> PlanStep:
    """Compare a declared node against its stored record.

    Args:
        node: Declared node
        record: Stored record, or None if the node was never applied
        digest: Content hash of the node's resolved properties
        deferred: References that could not be resolved yet

    Returns:
        PlanStep with CREATE, UPDATE or NO_CHANGE
    """
    step = PlanStep(
        node_id=node.id,
        change_type=ChangeType.NO_CHANGE,
        resource_type=node.type,
        node=node,
        current_record=record,
        content_hash=digest,
        deferred=set(deferred or ()),
    )

    if record is None:
        step.change_type = ChangeType.CREATE
        step.reason = "not in state"
    elif record.type != node.type:
        step.change_type = ChangeType.CREATE
        step.replaces = record.provider_id
        step.reason = f"type changed from {record.type}"
    elif step.deferred:
        step.change_type = ChangeType.UPDATE
        pending = sorted({reference.target for reference in step.deferred})
        step.reason = f"depends on pending outputs of {', '.join(pending)}"
    elif record.content_hash != digest:
        step.change_type = ChangeType.UPDATE
        step.reason = "properties changed"
    elif record.replaced:
        step.reason = f"{len(record.replaced)} replaced resource(s) pending deletion"

    return step


def build_record_graph(records: Mapping[str, StateRecord]) -> DependencyGraph:
    """Dependency graph of stored records, restricted to the given set."""
    graph = DependencyGraph()
    for node_id, record in sorted(records.items(), key=lambda item: (item[1].position, item[0])):
        graph.add_node(
            node_id,
            [dep for dep in record.dependencies if dep in records],
            record.position,
        )
    return graph


class Planner:
    """Creates reconciliation and destruction plans."""

    def __init__(self):
        """Initialize planner."""
        self.logger = get_logger(__name__)

    def create_plan(
        self,
        graph: ResourceGraph,
        records: Mapping[str, StateRecord],
        parameters: Mapping[str, Any],
        stack_name: str,
        lookup: Callable[[str, str], Any]
    ) -> Plan:
        """Create a plan by comparing declared nodes with stored records.

        References are resolved against the outputs already in state;
        outputs of nodes that are not applied yet stay deferred.

        Args:
            graph: Parsed template
            records: Stored records keyed by node ID
            parameters: Bound parameter values
            stack_name: Stack name for AWS::StackName
            lookup: Environment lookup

        Returns:
            Plan

        Raises:
            CycleError: If the template has a reference cycle
        """
        self.logger.info("Creating plan...")

        dependency_graph = graph.to_dependency_graph()
        order = dependency_graph.order(Direction.FORWARD)

        # Outputs of records that are going to be replaced are stale
        known_outputs = {
            node_id: record.output_bag()
            for node_id, record in records.items()
            if node_id in graph.nodes and graph.nodes[node_id].type == record.type
        }
        resolver = Resolver(parameters, stack_name, OutputRegistry(known_outputs), lookup, strict=False)

        steps = []
        for node_id in order:
            node = graph.nodes[node_id]
            properties, deferred = resolver.resolve_properties(node.properties)
            digest = content_hash(node.type, properties)
            steps.append(decide_change(node, records.get(node_id), digest, deferred))

        removed = {node_id: record for node_id, record in records.items() if node_id not in graph.nodes}
        delete_graph = build_record_graph(removed)
        delete_blockers = {
            node_id: {
                other_id for other_id, record in records.items()
                if other_id in graph.nodes and node_id in record.dependencies
            }
            for node_id in removed
        }
        steps.extend(self._delete_steps(removed, delete_graph, "not in template"))

        plan = Plan(
            steps=steps,
            dependency_graph=dependency_graph,
            delete_graph=delete_graph,
            delete_blockers=delete_blockers,
            parameters=dict(parameters),
        )

        summary = plan.get_summary()
        self.logger.info(
            f"Plan created: {summary['create']} create, {summary['update']} update, "
            f"{summary['delete']} delete, {summary['no_change']} unchanged"
        )
        return plan

    def create_destruction_plan(self, records: Mapping[str, StateRecord]) -> Plan:
        """Create a plan deleting every stored record, dependents first.

        Args:
            records: Stored records keyed by node ID

        Returns:
            Plan containing only DELETE steps
        """
        self.logger.info("Creating destruction plan...")

        delete_graph = build_record_graph(records)
        steps = self._delete_steps(records, delete_graph, "destroy")

        if not steps:
            self.logger.info("No resources to destroy")

        return Plan(steps=steps, dependency_graph=DependencyGraph(), delete_graph=delete_graph)

    def _delete_steps(
        self,
        records: Mapping[str, StateRecord],
        delete_graph: DependencyGraph,
        reason: str
    ) -> List[PlanStep]:
        return [
            PlanStep(
                node_id=node_id,
                change_type=ChangeType.DELETE,
                resource_type=records[node_id].type,
                reason=reason,
                current_record=records[node_id],
            )
            for node_id in delete_graph.order(Direction.REVERSE)
        ]
