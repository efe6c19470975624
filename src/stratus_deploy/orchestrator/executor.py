"""Reconciliation executor with dependency-aware scheduling and progress tracking."""

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Set

from stratus_deploy.orchestrator.planner import ChangeType, Plan, PlanStep
from stratus_deploy.provisioners.base import ProviderAdapter, ProviderResult
from stratus_deploy.state.manager import StateStore
from stratus_deploy.state.models import ReplacedResource, StateRecord
from stratus_deploy.template.resolver import Resolver, content_hash
from stratus_deploy.utils.errors import (
    DeploymentError,
    ErrorCategory,
    ErrorContext,
    ProviderError,
    SkippedDependencyFailure,
    StateError,
    error_handler,
)
from stratus_deploy.utils.logging import get_logger

logger = get_logger(__name__)

# How often to re-check deadlines while a call is queued behind a busy worker
_QUEUE_POLL_INTERVAL = 0.05


class NodeState(Enum):
    """Lifecycle of a node within one run."""
    ABSENT = "absent"
    PLANNED = "planned"
    APPLYING = "applying"
    APPLIED = "applied"
    NO_OP = "no_op"
    FAILED = "failed"
    SKIPPED = "skipped"


ALLOWED_TRANSITIONS = {
    NodeState.ABSENT: {NodeState.PLANNED},
    NodeState.PLANNED: {NodeState.APPLYING, NodeState.APPLIED, NodeState.NO_OP, NodeState.FAILED, NodeState.SKIPPED},
    NodeState.APPLYING: {NodeState.APPLIED, NodeState.FAILED},
    NodeState.APPLIED: set(),
    NodeState.NO_OP: set(),
    NodeState.FAILED: set(),
    NodeState.SKIPPED: set(),
}


@dataclass
class NodeResult:
    """Outcome of one node."""

    node_id: str
    state: NodeState
    change_type: ChangeType
    resource_type: str
    provider_id: Optional[str] = None
    error: Optional[DeploymentError] = None
    duration: float = 0.0  # seconds
    reason: Optional[str] = None

    def is_success(self) -> bool:
        """Check if the node ended Applied or NoOp."""
        return self.state in (NodeState.APPLIED, NodeState.NO_OP)


@dataclass
class RunSummary:
    """Complete result of an apply or destroy run."""

    results: Dict[str, NodeResult] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    output_errors: Dict[str, str] = field(default_factory=dict)
    cleanup_errors: List[DeploymentError] = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds

    def _ids(self, state: NodeState) -> List[str]:
        return [node_id for node_id, result in self.results.items() if result.state == state]

    @property
    def applied(self) -> List[str]:
        return self._ids(NodeState.APPLIED)

    @property
    def no_op(self) -> List[str]:
        return self._ids(NodeState.NO_OP)

    @property
    def failed(self) -> List[str]:
        return self._ids(NodeState.FAILED)

    @property
    def skipped(self) -> List[str]:
        return self._ids(NodeState.SKIPPED)

    def get_counts(self) -> Dict[str, int]:
        """Number of nodes per final state."""
        return {
            'applied': len(self.applied),
            'no_op': len(self.no_op),
            'failed': len(self.failed),
            'skipped': len(self.skipped),
        }

    def is_success(self) -> bool:
        """True only if every node ended Applied or NoOp and cleanup succeeded."""
        return (
            all(result.is_success() for result in self.results.values())
            and not self.cleanup_errors
        )

    @property
    def status(self) -> str:
        return "success" if self.is_success() else "failed"


# Type alias for progress callback
ProgressCallback = Callable[[NodeResult], None]


@dataclass
class _InFlight:
    """A provider call submitted to the worker pool."""

    step: PlanStep
    change_type: ChangeType
    call: Optional[Callable[[], Any]] = None
    future: Optional[Future] = None
    on_success: Optional[Callable[[Any, "_InFlight"], None]] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    digest: Optional[str] = None
    started: Optional[float] = None  # Set by the worker when the call begins
    timed_out: bool = False


class ReconciliationExecutor:
    """Executes plans against a provider adapter.

    A node is dispatched once every node it depends on has been applied
    (or needed no change). Provider calls run on a thread pool; state
    records are written from the scheduling thread, serialized by a lock.
    With ``max_workers=1`` nodes are applied one at a time in plan order.

    An executor runs one plan at a time.
    """

    def __init__(
        self,
        provider: ProviderAdapter,
        state_store: StateStore,
        max_workers: int = 1,
        timeout: Optional[float] = None
    ):
        """Initialize reconciliation executor.

        Args:
            provider: Provider adapter for remote operations
            state_store: Store receiving a record after each confirmed operation
            max_workers: Maximum number of concurrent provider calls
            timeout: Per-call timeout in seconds (None for no timeout)
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")

        self.provider = provider
        self.state_store = state_store
        self.max_workers = max_workers
        self.timeout = timeout
        self.logger = get_logger(__name__)
        self._state_lock = threading.Lock()

        self._states: Dict[str, NodeState] = {}
        self._results: Dict[str, NodeResult] = {}
        self._pending: Dict[str, PlanStep] = {}
        self._blocked_by_failure: Callable[[str], Set[str]] = lambda node_id: set()
        self._succeeded: Set[str] = set()
        self._cleanup: Dict[str, StateRecord] = {}
        self._plan: Optional[Plan] = None
        self._resolver: Optional[Resolver] = None
        self._progress_callback: Optional[ProgressCallback] = None

    def execute(
        self,
        plan: Plan,
        resolver: Optional[Resolver] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> RunSummary:
        """Execute a plan: forward steps, then deletes, then replaced-resource cleanup.

        Args:
            plan: Plan to execute
            resolver: Strict resolver whose output registry is filled as nodes apply
                (required when the plan has forward steps)
            progress_callback: Optional callback receiving each final NodeResult

        Returns:
            RunSummary with per-node results
        """
        forward_steps = plan.forward_steps()
        delete_steps = plan.delete_steps()
        if forward_steps and resolver is None:
            raise ValueError("A resolver is required to apply forward steps")

        self._plan = plan
        self._resolver = resolver
        self._progress_callback = progress_callback
        self._states = {}
        self._results = {}
        self._succeeded = set()
        self._cleanup = {}

        for step in plan.steps:
            self._states[step.node_id] = NodeState.ABSENT
            self._transition(step.node_id, NodeState.PLANNED)

        summary = RunSummary(start_time=datetime.now(timezone.utc))
        self.logger.info(
            f"Executing plan: {len(forward_steps)} forward, {len(delete_steps)} delete "
            f"(max_workers={self.max_workers})"
        )

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='stratus-worker') as pool:
            self._run_phase(
                pool,
                forward_steps,
                plan.dependency_graph.get_dependencies,
                plan.dependency_graph.get_all_dependents,
                self._start_forward,
            )

            # A removed node waits for its removed dependents to be deleted and for
            # surviving nodes that still reference it to apply without it
            self._run_phase(
                pool,
                delete_steps,
                lambda node_id: plan.delete_graph.get_dependents(node_id) | plan.delete_blockers.get(node_id, set()),
                plan.delete_graph.get_all_dependencies,
                self._start_delete,
            )

            abandoned = sum(1 for result in self._results.values() if result.reason == 'timed out')
            if abandoned:
                self.logger.warning(f"Waiting for {abandoned} timed-out provider calls to return")

        summary.cleanup_errors = self._run_cleanup()

        summary.results = {
            step.node_id: self._results[step.node_id]
            for step in plan.steps if step.node_id in self._results
        }
        summary.end_time = datetime.now(timezone.utc)
        summary.duration = (summary.end_time - summary.start_time).total_seconds()

        counts = summary.get_counts()
        message = (
            f"Run finished in {summary.duration:.1f}s: {counts['applied']} applied, "
            f"{counts['no_op']} unchanged, {counts['failed']} failed, {counts['skipped']} skipped"
        )
        if summary.is_success():
            self.logger.info(message)
        else:
            self.logger.error(message)
        return summary

    def _run_phase(
        self,
        pool: ThreadPoolExecutor,
        steps: List[PlanStep],
        prerequisites: Callable[[str], Set[str]],
        blocked_by_failure: Callable[[str], Set[str]],
        start: Callable[[PlanStep], Optional[_InFlight]]
    ) -> None:
        """Dispatch steps as their prerequisites succeed until all are final."""
        self._pending = {step.node_id: step for step in steps}
        self._blocked_by_failure = blocked_by_failure
        running: Dict[Future, _InFlight] = {}

        while self._pending or running:
            for node_id in list(self._pending):
                if len(running) >= self.max_workers:
                    break
                step = self._pending.get(node_id)
                if step is None:
                    # Skipped by a failure earlier in this pass
                    continue
                if not prerequisites(node_id) <= self._succeeded:
                    continue

                del self._pending[node_id]
                inflight = start(step)
                if inflight is not None:
                    inflight.future = pool.submit(self._invoke, inflight)
                    running[inflight.future] = inflight

            if not running:
                # Nothing can make progress; prerequisites outside this phase never succeeded
                for node_id, step in list(self._pending.items()):
                    unmet = sorted(prerequisites(node_id) - self._succeeded)
                    del self._pending[node_id]
                    self._skip(step, unmet[0] if unmet else node_id)
                break

            done, _ = wait(list(running), timeout=self._next_wait(running), return_when=FIRST_COMPLETED)
            for future in done:
                self._complete(running.pop(future))
            self._expire(running)

    def _invoke(self, inflight: _InFlight):
        inflight.started = time.monotonic()
        return inflight.call()

    def _next_wait(self, running: Dict[Future, _InFlight]) -> Optional[float]:
        if self.timeout is None:
            return None
        now = time.monotonic()
        remaining = [
            inflight.started + self.timeout - now
            for inflight in running.values() if inflight.started is not None
        ]
        if len(remaining) < len(running):
            return _QUEUE_POLL_INTERVAL
        return max(0.0, min(remaining))

    def _expire(self, running: Dict[Future, _InFlight]) -> None:
        """Fail calls that have exceeded the timeout; late results are still recorded."""
        if self.timeout is None:
            return
        now = time.monotonic()
        for future, inflight in list(running.items()):
            if inflight.future.done():
                continue
            if inflight.started is None or now - inflight.started < self.timeout:
                continue
            del running[future]
            inflight.timed_out = True
            error = ProviderError(
                f"Provider call timed out after {self.timeout}s",
                category=ErrorCategory.NETWORK,
                retryable=True,
                context=ErrorContext(
                    resource_id=inflight.step.node_id,
                    resource_type=inflight.step.resource_type,
                    operation=inflight.change_type.value
                ),
                suggestions=['Re-run the command; the run reconciles using the recorded provider id']
            )
            self._fail(inflight.step, error, inflight.change_type, reason='timed out', started=inflight.started)
            future.add_done_callback(partial(self._late_completion, inflight))

    def _complete(self, inflight: _InFlight) -> None:
        try:
            result = inflight.future.result()
        except Exception as e:
            context = ErrorContext(
                resource_id=inflight.step.node_id,
                resource_type=inflight.step.resource_type,
                operation=inflight.change_type.value
            )
            self._fail(inflight.step, error_handler.handle_exception(e, context), inflight.change_type,
                       started=inflight.started)
            return
        inflight.on_success(result, inflight)

    def _late_completion(self, inflight: _InFlight, future: Future) -> None:
        """Runs on the worker thread when a timed-out call eventually returns."""
        if future.exception() is not None:
            self.logger.warning(
                f"Timed-out call for {inflight.step.node_id} failed: {future.exception()}",
                extra={'resource_id': inflight.step.node_id}
            )
            return
        try:
            if inflight.change_type == ChangeType.DELETE:
                self._delete_record(inflight.step.node_id)
            else:
                self._save_record(self._build_record(inflight.step, inflight, future.result()))
        except StateError as e:
            self.logger.error(f"Failed to record late result for {inflight.step.node_id}: {e}")
            return
        self.logger.warning(
            f"Timed-out call for {inflight.step.node_id} succeeded late; state recorded",
            extra={'resource_id': inflight.step.node_id}
        )

    # Forward phase

    def _start_forward(self, step: PlanStep) -> Optional[_InFlight]:
        node = step.node
        try:
            properties, _ = self._resolver.resolve_properties(node.properties)
        except DeploymentError as e:
            e.context.resource_id = e.context.resource_id or node.id
            self._fail(step, e, step.change_type)
            return None

        digest = content_hash(node.type, properties)
        record = step.current_record

        if record is not None and record.type == node.type and record.content_hash == digest:
            self._finish_no_op(step, record)
            return None

        if record is not None and record.type == node.type:
            change_type = ChangeType.UPDATE
            call = partial(
                self.provider.update, node.type, record.provider_id, properties, record.properties, node.id
            )
        else:
            change_type = ChangeType.CREATE
            call = partial(self.provider.create, node.type, properties, node.id)

        self._transition(node.id, NodeState.APPLYING)
        self.logger.info(
            f"{change_type.value.capitalize()} {node.id} ({node.type})",
            extra={'resource_id': node.id, 'resource_type': node.type}
        )
        return _InFlight(
            step=step,
            change_type=change_type,
            call=call,
            on_success=self._finish_applied,
            properties=properties,
            digest=digest,
        )

    def _finish_no_op(self, step: PlanStep, record: StateRecord) -> None:
        node = step.node
        dependencies = self._dependencies_of(node.id)
        if (record.dependencies != dependencies or record.position != node.position
                or record.deletion_policy != node.deletion_policy):
            record = record.model_copy(update={
                'dependencies': dependencies,
                'position': node.position,
                'deletion_policy': node.deletion_policy,
            })
            try:
                self._save_record(record)
            except StateError as e:
                self._fail(step, e, ChangeType.NO_CHANGE)
                return

        if record.replaced:
            self._cleanup[node.id] = record
        self._resolver.outputs.set(node.id, record.provider_id, record.outputs)
        self._succeeded.add(node.id)
        self._transition(node.id, NodeState.NO_OP)
        self._record_result(NodeResult(
            node_id=node.id,
            state=NodeState.NO_OP,
            change_type=ChangeType.NO_CHANGE,
            resource_type=node.type,
            provider_id=record.provider_id,
        ))

    def _finish_applied(self, result: ProviderResult, inflight: _InFlight) -> None:
        step = inflight.step
        node = step.node
        record = self._build_record(step, inflight, result)
        try:
            self._save_record(record)
        except StateError as e:
            # The remote change succeeded but is not recorded; a retry reconciles
            self._fail(step, e, inflight.change_type, started=inflight.started)
            return

        if record.replaced:
            self._cleanup[node.id] = record
        self._resolver.outputs.set(node.id, result.provider_id, result.outputs)
        self._succeeded.add(node.id)
        self._transition(node.id, NodeState.APPLIED)
        self._record_result(NodeResult(
            node_id=node.id,
            state=NodeState.APPLIED,
            change_type=inflight.change_type,
            resource_type=node.type,
            provider_id=result.provider_id,
            duration=self._elapsed(inflight.started),
        ))

    def _build_record(self, step: PlanStep, inflight: _InFlight, result: ProviderResult) -> StateRecord:
        node = step.node
        return StateRecord(
            node_id=node.id,
            type=node.type,
            provider_id=result.provider_id,
            properties=inflight.properties,
            outputs=result.outputs,
            content_hash=inflight.digest,
            dependencies=self._dependencies_of(node.id),
            position=node.position,
            deletion_policy=node.deletion_policy,
            replaced=self._superseded(step, result),
        )

    @staticmethod
    def _superseded(step: PlanStep, result: ProviderResult) -> List[ReplacedResource]:
        """Resources this apply made obsolete, plus those still awaiting deletion."""
        previous = step.current_record
        pending = list(previous.replaced) if previous is not None else []
        if previous is not None and previous.provider_id != result.provider_id:
            if previous.type != step.node.type:
                pending.append(ReplacedResource(type=previous.type, provider_id=previous.provider_id))
            elif result.replaced_provider_id:
                pending.append(ReplacedResource(type=step.node.type, provider_id=result.replaced_provider_id))

        seen = set()
        unique = []
        for resource in pending:
            if resource.provider_id not in seen and resource.provider_id != result.provider_id:
                seen.add(resource.provider_id)
                unique.append(resource)
        return unique

    def _dependencies_of(self, node_id: str) -> List[str]:
        graph = self._plan.dependency_graph
        return sorted(graph.get_dependencies(node_id), key=lambda dep: (graph.nodes[dep].position, dep))

    # Delete phase

    def _start_delete(self, step: PlanStep) -> Optional[_InFlight]:
        record = step.current_record
        retained = record.deletion_policy == 'Retain'

        if retained and not record.replaced:
            self._finish_deleted(None, _InFlight(step=step, change_type=ChangeType.DELETE))
            return None

        self._transition(step.node_id, NodeState.APPLYING)
        self.logger.info(
            f"Delete {step.node_id} ({record.type})" if not retained
            else f"Delete resources superseded by {step.node_id}",
            extra={'resource_id': step.node_id, 'resource_type': record.type}
        )
        return _InFlight(
            step=step,
            change_type=ChangeType.DELETE,
            call=partial(self._delete_resources, record, retained),
            on_success=self._finish_deleted,
        )

    def _delete_resources(self, record: StateRecord, retained: bool) -> None:
        """Runs on a worker: superseded resources first, then the node's own."""
        for superseded in record.replaced:
            self.provider.delete(superseded.type, superseded.provider_id)
        if not retained:
            self.provider.delete(record.type, record.provider_id)

    def _finish_deleted(self, _result, inflight: _InFlight) -> None:
        step = inflight.step
        record = step.current_record
        try:
            self._delete_record(step.node_id)
        except StateError as e:
            self._fail(step, e, ChangeType.DELETE, started=inflight.started)
            return

        reason = None
        if record.deletion_policy == 'Retain':
            reason = 'retained'
            self.logger.info(
                f"Retaining {step.node_id} ({record.provider_id}); removed from state only",
                extra={'resource_id': step.node_id, 'provider_id': record.provider_id}
            )

        self._succeeded.add(step.node_id)
        self._transition(step.node_id, NodeState.APPLIED)
        self._record_result(NodeResult(
            node_id=step.node_id,
            state=NodeState.APPLIED,
            change_type=ChangeType.DELETE,
            resource_type=step.resource_type,
            provider_id=record.provider_id,
            duration=self._elapsed(inflight.started),
            reason=reason,
        ))

    # Shared bookkeeping

    def _fail(
        self,
        step: PlanStep,
        error: DeploymentError,
        change_type: ChangeType,
        reason: Optional[str] = None,
        started: Optional[float] = None
    ) -> None:
        """Mark a node Failed and skip everything that was waiting on it."""
        self._transition(step.node_id, NodeState.FAILED)
        error_handler.log_error(error)
        self._record_result(NodeResult(
            node_id=step.node_id,
            state=NodeState.FAILED,
            change_type=change_type,
            resource_type=step.resource_type,
            error=error,
            duration=self._elapsed(started),
            reason=reason,
        ))

        blocked = self._blocked_by_failure(step.node_id)
        for node_id in list(self._pending):
            if node_id in blocked:
                self._skip(self._pending.pop(node_id), step.node_id)

    def _skip(self, step: PlanStep, failed_dependency: str) -> None:
        error = SkippedDependencyFailure(step.node_id, failed_dependency)
        self._transition(step.node_id, NodeState.SKIPPED)
        self.logger.warning(error.message, extra={'resource_id': step.node_id})
        self._record_result(NodeResult(
            node_id=step.node_id,
            state=NodeState.SKIPPED,
            change_type=step.change_type,
            resource_type=step.resource_type,
            error=error,
        ))

    def _transition(self, node_id: str, new_state: NodeState) -> None:
        current = self._states[node_id]
        if new_state not in ALLOWED_TRANSITIONS[current]:
            raise RuntimeError(f"Invalid state transition for {node_id}: {current.value} -> {new_state.value}")
        self._states[node_id] = new_state

    def _record_result(self, result: NodeResult) -> None:
        self._results[result.node_id] = result
        if result.state == NodeState.APPLIED:
            self.logger.info(
                f"{result.change_type.value.capitalize()} {result.node_id} complete",
                extra={
                    'resource_id': result.node_id,
                    'resource_type': result.resource_type,
                    'provider_id': result.provider_id,
                    'duration': round(result.duration, 3),
                }
            )
        if self._progress_callback:
            self._progress_callback(result)

    def _save_record(self, record: StateRecord) -> None:
        with self._state_lock:
            self.state_store.save(record.node_id, record)

    def _delete_record(self, node_id: str) -> None:
        with self._state_lock:
            self.state_store.delete(node_id)

    def _run_cleanup(self) -> List[DeploymentError]:
        """Delete resources superseded by replacements.

        A node's superseded resources stay recorded until their delete
        succeeds, and are left alone while a node that referenced the old
        resource has not moved to the new one.
        """
        errors = []
        for node_id, record in self._cleanup.items():
            unsettled = sorted(
                holder for holder in self._reference_holders(node_id)
                if holder not in self._results or not self._results[holder].is_success()
            )
            if unsettled:
                self.logger.warning(
                    f"Keeping resources superseded by {node_id} until {', '.join(unsettled)} apply",
                    extra={'resource_id': node_id}
                )
                continue

            remaining = []
            for superseded in record.replaced:
                self.logger.info(
                    f"Removing replaced resource {superseded.provider_id} of {node_id}",
                    extra={
                        'resource_id': node_id,
                        'resource_type': superseded.type,
                        'provider_id': superseded.provider_id,
                    }
                )
                try:
                    self.provider.delete(superseded.type, superseded.provider_id)
                except Exception as e:
                    context = ErrorContext(resource_id=node_id, resource_type=superseded.type, operation='cleanup')
                    error = error_handler.handle_exception(e, context)
                    error_handler.log_error(error)
                    errors.append(error)
                    remaining.append(superseded)

            if remaining != record.replaced:
                try:
                    self._save_record(record.model_copy(update={'replaced': remaining}))
                except StateError as e:
                    error_handler.log_error(e)
                    errors.append(e)
        return errors

    def _reference_holders(self, node_id: str) -> Set[str]:
        """Nodes whose last applied properties may point at ``node_id``'s old resource."""
        holders = set(self._plan.dependency_graph.get_dependents(node_id))
        holders.update(
            step.node_id for step in self._plan.delete_steps()
            if node_id in step.current_record.dependencies
        )
        return holders

    @staticmethod
    def _elapsed(started: Optional[float]) -> float:
        return time.monotonic() - started if started is not None else 0.0
