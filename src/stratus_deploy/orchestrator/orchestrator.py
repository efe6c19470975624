"""Main orchestrator that coordinates planning, execution and state refresh."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Union

from stratus_deploy.orchestrator.executor import ProgressCallback, ReconciliationExecutor, RunSummary
from stratus_deploy.orchestrator.planner import Plan, Planner
from stratus_deploy.provisioners.base import ProviderAdapter
from stratus_deploy.state.manager import StateStore
from stratus_deploy.state.models import StateRecord
from stratus_deploy.template.models import ResourceGraph
from stratus_deploy.template.parser import TemplateParser
from stratus_deploy.template.resolver import OutputRegistry, Resolver, bind_parameters, masked_values
from stratus_deploy.utils.errors import DeploymentError
from stratus_deploy.utils.logging import LogContext, get_logger

logger = get_logger(__name__)

MASK = '****'


@dataclass
class RefreshResult:
    """Outcome of reconciling state records with the provider."""

    unchanged: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)


class DeploymentOrchestrator:
    """Coordinates template parsing, planning and reconciliation for one stack."""

    def __init__(
        self,
        provider: ProviderAdapter,
        state_store: StateStore,
        stack_name: str,
        max_workers: int = 1,
        timeout: Optional[float] = None
    ):
        """Initialize deployment orchestrator.

        Args:
            provider: Provider adapter
            state_store: State store for this stack
            stack_name: Stack name used for AWS::StackName, tags and locking
            max_workers: Maximum parallel provider calls (1 for sequential)
            timeout: Per-call timeout in seconds
        """
        self.provider = provider
        self.state_store = state_store
        self.stack_name = stack_name

        self.parser = TemplateParser()
        self.planner = Planner()
        self.executor = ReconciliationExecutor(
            provider=provider,
            state_store=state_store,
            max_workers=max_workers,
            timeout=timeout
        )

        self.logger = get_logger(__name__)

    def load_template(self, path: Union[str, Path]) -> ResourceGraph:
        """Parse a template file into a resource graph."""
        return self.parser.parse_file(path)

    def bind_parameters(self, graph: ResourceGraph, parameters: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """Validate supplied parameter values against the template."""
        return bind_parameters(graph.parameters, parameters or {}, lookup=self.provider.lookup)

    def plan(self, graph: ResourceGraph, parameters: Optional[Mapping[str, Any]] = None) -> Plan:
        """Create a reconciliation plan for a template.

        Args:
            graph: Parsed template
            parameters: Supplied parameter values

        Returns:
            Plan

        Raises:
            ValidationError: If parameter values are invalid
            CycleError: If the template has a reference cycle
        """
        bound = self.bind_parameters(graph, parameters)
        records = self.state_store.load()
        return self.planner.create_plan(graph, records, bound, self.stack_name, self.provider.lookup)

    def apply(
        self,
        graph: ResourceGraph,
        parameters: Optional[Mapping[str, Any]] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> RunSummary:
        """Plan and execute a template in one step.

        The state lock is held for the whole run. Nothing is sent to the
        provider if planning fails.

        Args:
            graph: Parsed template
            parameters: Supplied parameter values
            progress_callback: Optional callback receiving each node result

        Returns:
            RunSummary including evaluated stack outputs
        """
        with LogContext(self.logger, stack_name=self.stack_name, operation='apply'):
            with self.state_store:
                plan = self.plan(graph, parameters)

                if not plan.has_changes():
                    self.logger.info("No changes to apply; verifying outputs")

                resolver = Resolver(
                    plan.parameters, self.stack_name, OutputRegistry(), self.provider.lookup, strict=True
                )
                summary = self.executor.execute(plan, resolver, progress_callback)

                secrets = masked_values(graph.parameters, plan.parameters)
                summary.outputs, summary.output_errors = self._evaluate_outputs(graph, resolver, secrets)
                return summary

    def destroy(self, progress_callback: Optional[ProgressCallback] = None) -> RunSummary:
        """Delete every resource recorded in state, dependents first.

        Args:
            progress_callback: Optional callback receiving each node result

        Returns:
            RunSummary
        """
        with LogContext(self.logger, stack_name=self.stack_name, operation='destroy'):
            with self.state_store:
                plan = self.planner.create_destruction_plan(self.state_store.load())
                return self.executor.execute(plan, progress_callback=progress_callback)

    def outputs(
        self,
        graph: ResourceGraph,
        parameters: Optional[Mapping[str, Any]] = None
    ) -> Tuple[Dict[str, Any], Dict[str, str]]:
        """Evaluate stack outputs from the outputs recorded in state.

        Returns:
            Tuple of (output values, errors for outputs that could not be evaluated)
        """
        bound = self.bind_parameters(graph, parameters)
        records = self.state_store.load()
        registry = OutputRegistry({
            node_id: record.output_bag()
            for node_id, record in records.items()
            if node_id in graph.nodes and graph.nodes[node_id].type == record.type
        })
        resolver = Resolver(bound, self.stack_name, registry, self.provider.lookup, strict=True)
        return self._evaluate_outputs(graph, resolver, masked_values(graph.parameters, bound))

    def refresh(self) -> RefreshResult:
        """Reconcile state records with what the provider reports.

        Records whose resource no longer exists are removed so the next
        apply recreates them; changed outputs are written back.
        """
        result = RefreshResult()
        with LogContext(self.logger, stack_name=self.stack_name, operation='refresh'):
            with self.state_store:
                records = self.state_store.load()
                for node_id, record in sorted(records.items(), key=lambda item: (item[1].position, item[0])):
                    described = self.provider.describe(record.type, record.provider_id)
                    if described is None:
                        self.logger.warning(
                            f"{node_id} ({record.provider_id}) no longer exists; removing from state",
                            extra={'resource_id': node_id, 'provider_id': record.provider_id}
                        )
                        self.state_store.delete(node_id)
                        result.removed.append(node_id)
                    elif self._refresh_record(record, described):
                        result.updated.append(node_id)
                    else:
                        result.unchanged.append(node_id)

        self.logger.info(
            f"Refresh complete: {len(result.unchanged)} unchanged, "
            f"{len(result.updated)} updated, {len(result.removed)} removed"
        )
        return result

    def _refresh_record(self, record: StateRecord, described: Dict[str, Any]) -> bool:
        outputs = dict(record.outputs)
        outputs.update(described)
        if outputs == record.outputs:
            return False
        self.state_store.save(record.node_id, record.model_copy(update={'outputs': outputs}))
        return True

    def _evaluate_outputs(
        self,
        graph: ResourceGraph,
        resolver: Resolver,
        secrets: Set[str]
    ) -> Tuple[Dict[str, Any], Dict[str, str]]:
        values = {}
        errors = {}
        for name, spec in graph.outputs.items():
            try:
                values[name] = _mask(resolver.resolve(spec.value), secrets)
            except DeploymentError as e:
                self.logger.warning(f"Output '{name}' could not be evaluated: {e.message}")
                errors[name] = e.message
        return values, errors


def _mask(value: Any, secrets: Set[str]) -> Any:
    """Replace NoEcho parameter values inside an output."""
    if isinstance(value, str):
        for secret in secrets:
            if secret:
                value = value.replace(secret, MASK)
        return value
    if isinstance(value, list):
        return [_mask(item, secrets) for item in value]
    if isinstance(value, dict):
        return {key: _mask(item, secrets) for key, item in value.items()}
    return value
