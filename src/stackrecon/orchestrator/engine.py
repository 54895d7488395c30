"""Reconciliation engine that drives stacks from their observed to their desired state."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple

from stackrecon.client.base import RemoteStackClient, drift_detection_handle
from stackrecon.config.models import ReconcilerSettings
from stackrecon.orchestrator.planner import ActionPlan, ActionType, PlannedAction, StateDiffer
from stackrecon.orchestrator.tracker import OperationResult, OperationTracker
from stackrecon.state.models import (
    DriftDetectionStatus,
    DriftStatus,
    HEALTHY_STATUSES,
    ObservedStack,
    OperationHandle,
    ResourceDrift,
    STABLE_STATUSES,
    StackDescriptor,
    StackStatus,
)
from stackrecon.utils.cancellation import CancellationToken
from stackrecon.utils.errors import (
    AlreadyInProgressError,
    DivergenceError,
    ErrorContext,
    NotFoundError,
    OperationFailedError,
    ReconcileCancelledError,
    ReconcileError,
    error_handler,
)
from stackrecon.utils.logging import get_logger
from stackrecon.utils.retry import RetryStrategy

logger = get_logger(__name__)

# Number of recent events searched for failed resources
FAILURE_EVENT_LIMIT = 100


class ReconcilePhase(Enum):
    """Phase of a single stack reconciliation."""
    FETCHING = "fetching"
    PLANNING = "planning"
    EXECUTING = "executing"
    AWAITING = "awaiting"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ReconcileResult:
    """Result of reconciling one stack."""

    identity: str
    desired: StackDescriptor
    plan: Optional[ActionPlan] = None
    observed: Optional[ObservedStack] = None
    operations: List[OperationResult] = field(default_factory=list)
    phases: List[ReconcilePhase] = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds
    error: Optional[ReconcileError] = None

    @property
    def phase(self) -> Optional[ReconcilePhase]:
        """Latest phase reached."""
        return self.phases[-1] if self.phases else None

    def is_success(self) -> bool:
        return self.phase == ReconcilePhase.DONE

    def is_noop(self) -> bool:
        """Check if the stack already matched and nothing was submitted."""
        return self.is_success() and not self.operations


class InFlightGuard:
    """Rejects a second reconciliation of an identity that is already running."""

    def __init__(self):
        self._lock = threading.Lock()
        self._in_flight: Set[str] = set()

    @contextmanager
    def claim(self, identity: str) -> Iterator[None]:
        """Hold the identity for the duration of the block.

        Raises:
            AlreadyInProgressError: If the identity is already claimed
        """
        with self._lock:
            if identity in self._in_flight:
                raise AlreadyInProgressError(
                    "A reconciliation for this stack is already in progress",
                    context=ErrorContext(stack_identity=identity),
                    suggestions=["Wait for the running reconciliation to finish and retry"]
                )
            self._in_flight.add(identity)
        try:
            yield
        finally:
            with self._lock:
                self._in_flight.discard(identity)

    def is_claimed(self, identity: str) -> bool:
        with self._lock:
            return identity in self._in_flight


class ReconciliationEngine:
    """Drives stacks through Fetching, Planning, Executing, Awaiting and Verifying.

    The engine holds no per-stack state between calls. A failed reconciliation
    is not retried automatically; calling ``reconcile`` again re-reads the
    remote state and plans from there, which makes repeated calls safe.
    """

    def __init__(
        self,
        client: RemoteStackClient,
        settings: Optional[ReconcilerSettings] = None,
        differ: Optional[StateDiffer] = None,
        tracker: Optional[OperationTracker] = None,
        guard: Optional[InFlightGuard] = None
    ):
        """Initialize reconciliation engine.

        Args:
            client: Remote stack client shared by all reconciliations
            settings: Polling, retry and execution settings
            differ: State differ, built by default
            tracker: Operation tracker, built from settings by default
            guard: In-flight guard, shared between engines reconciling the
                same account
        """
        self.client = client
        self.settings = settings or ReconcilerSettings()
        self.differ = differ or StateDiffer()
        self.tracker = tracker or OperationTracker(
            client,
            poll_interval=self.settings.poll_interval,
            max_poll_interval=self.settings.max_poll_interval,
            backoff_multiplier=self.settings.backoff_multiplier,
            timeout=self.settings.operation_timeout,
            query_retries=self.settings.query_retries,
            query_retry_base_delay=self.settings.query_retry_base_delay
        )
        self.guard = guard or InFlightGuard()
        self.read_retry = RetryStrategy(
            max_retries=self.settings.query_retries,
            base_delay=self.settings.query_retry_base_delay,
            max_delay=self.settings.max_poll_interval
        )
        self.logger = get_logger(__name__)

    def plan(self, desired: StackDescriptor, cancel: Optional[CancellationToken] = None) -> ActionPlan:
        """Fetch the stack and plan without submitting anything.

        In-progress stacks are not waited for; they are reported as an error.
        """
        cancel = cancel or CancellationToken()
        try:
            observed = self._resolve_drift(desired, self._fetch(desired, cancel), cancel)
            return self.differ.plan(desired, observed)
        except Exception as e:
            error = error_handler.handle_exception(
                e, ErrorContext(stack_identity=desired.identity, stack_name=desired.name,
                                phase=ReconcilePhase.PLANNING.value)
            )
            if error is e:
                raise
            raise error from e

    def reconcile(
        self,
        desired: StackDescriptor,
        cancel: Optional[CancellationToken] = None
    ) -> ReconcileResult:
        """Bring one stack to its desired state.

        Args:
            desired: Desired stack configuration
            cancel: Optional cancellation token for all waits

        Returns:
            ReconcileResult whose ``observed`` is the verified final state

        Raises:
            AlreadyInProgressError: The identity is already being reconciled
            ReconcileError: Any failure, with the phase and plan step in its
                context
        """
        with self.guard.claim(desired.identity):
            return self._reconcile(desired, cancel or CancellationToken())

    def reconcile_many(
        self,
        descriptors: Sequence[StackDescriptor],
        max_workers: Optional[int] = None,
        cancel: Optional[CancellationToken] = None
    ) -> Dict[str, ReconcileResult]:
        """Reconcile distinct stacks in parallel.

        Errors are not raised; each failed stack's result carries its error.

        Returns:
            Results keyed by stack identity
        """
        cancel = cancel or CancellationToken()
        workers = max_workers or self.settings.max_workers
        results: Dict[str, ReconcileResult] = {}

        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_desired = {
                executor.submit(self.reconcile, desired, cancel): desired
                for desired in descriptors
            }

            for future in as_completed(future_to_desired):
                desired = future_to_desired[future]
                try:
                    results[desired.identity] = future.result()
                except ReconcileError as e:
                    # Errors raised after the result exists carry it; others get a stub
                    results[desired.identity] = getattr(e, 'result', None) or ReconcileResult(
                        identity=desired.identity,
                        desired=desired,
                        phases=[ReconcilePhase.FAILED],
                        error=e
                    )

        failed = sum(1 for r in results.values() if not r.is_success())
        self.logger.info(
            f"Reconciled {len(results)} stack(s): {len(results) - failed} succeeded, {failed} failed"
        )
        return results

    def detect_drift(
        self,
        name: str,
        cancel: Optional[CancellationToken] = None
    ) -> Tuple[DriftDetectionStatus, List[ResourceDrift]]:
        """Run a drift detection scan and return its outcome and per-resource drift."""
        cancel = cancel or CancellationToken()
        detection_id = self.client.detect_stack_drift(name)
        result = self.tracker.await_operation(
            drift_detection_handle(name, detection_id),
            timeout=self.settings.drift_timeout,
            cancel=cancel
        )
        drifts = self.read_retry.execute_with_retry(
            self.client.describe_stack_resource_drifts, name, cancel=cancel
        )
        self.logger.info(
            f"Drift detection finished: {result.drift.stack_drift_status.value} "
            f"({result.drift.drifted_resource_count} drifted resource(s))",
            extra={'stack': name, 'operation': 'detect_drift'}
        )
        return result.drift, drifts

    def _reconcile(self, desired: StackDescriptor, cancel: CancellationToken) -> ReconcileResult:
        result = ReconcileResult(
            identity=desired.identity,
            desired=desired,
            start_time=datetime.now(timezone.utc)
        )
        started = time.monotonic()
        step: Optional[str] = None

        def enter(phase: ReconcilePhase) -> None:
            result.phases.append(phase)
            self.logger.debug(f"Entering {phase.value}", extra={'stack': desired.identity, 'phase': phase.value})

        try:
            enter(ReconcilePhase.FETCHING)
            observed = self._fetch(desired, cancel)
            if observed.exists and observed.status.in_progress:
                observed = self._settle(desired, observed, cancel)
            observed = self._resolve_drift(desired, observed, cancel)
            result.observed = observed

            enter(ReconcilePhase.PLANNING)
            plan = self.differ.plan(desired, observed)
            result.plan = plan

            if plan.is_noop():
                enter(ReconcilePhase.DONE)
                return result

            if self.settings.validate_templates and plan.needs_template():
                self.read_retry.execute_with_retry(
                    self.client.validate_template,
                    template_body=desired.template_body,
                    template_url=desired.template_url,
                    cancel=cancel
                )

            handle: Optional[OperationHandle] = None
            for index, action in enumerate(plan.actions, 1):
                step = f"{index}/{len(plan)} {action.action_type.value}"
                if cancel.cancelled:
                    raise ReconcileCancelledError(
                        f"Reconciliation cancelled before step {step} ({cancel.reason})",
                        mutation_submitted=bool(result.operations)
                    )

                enter(ReconcilePhase.EXECUTING)
                handle = self._submit(action)

                enter(ReconcilePhase.AWAITING)
                try:
                    operation = self.tracker.await_operation(handle, cancel=cancel)
                except OperationFailedError as e:
                    self._attach_failure_events(e, handle)
                    raise
                result.operations.append(operation)

            step = None
            enter(ReconcilePhase.VERIFYING)
            result.observed = self._verify(
                desired, handle, cancel,
                resolves_drift=any(action.resolves_drift for action in plan.actions)
            )

            enter(ReconcilePhase.DONE)
            return result

        except Exception as e:
            error = error_handler.handle_exception(
                e,
                ErrorContext(
                    stack_identity=desired.identity,
                    stack_name=desired.name,
                    phase=result.phase.value if result.phase else None,
                    step=step
                )
            )
            if isinstance(error, ReconcileCancelledError) and result.operations:
                error.mutation_submitted = True
            result.error = error
            result.phases.append(ReconcilePhase.FAILED)
            error.result = result
            error_handler.log_error(error)
            if error is e:
                raise
            raise error from e

        finally:
            result.end_time = datetime.now(timezone.utc)
            result.duration = time.monotonic() - started
            self.logger.info(
                f"Reconciliation {result.phase.value} in {result.duration:.1f}s",
                extra={'stack': desired.identity, 'phase': result.phase.value,
                       'duration': result.duration}
            )

    def _fetch(self, desired: StackDescriptor, cancel: CancellationToken) -> ObservedStack:
        """Read the stack, treating a missing stack as absent."""
        try:
            return self.read_retry.execute_with_retry(
                self.client.describe_stack, desired.name, cancel=cancel
            )
        except NotFoundError:
            self.logger.debug("Stack does not exist", extra={'stack': desired.identity})
            return ObservedStack.absent(desired.name)

    def _settle(self, desired: StackDescriptor, observed: ObservedStack,
                cancel: CancellationToken) -> ObservedStack:
        """Wait for an operation started elsewhere to finish, then re-read."""
        self.logger.info(
            f"Stack is {observed.status.value}; waiting for it to settle",
            extra={'stack': desired.identity}
        )
        handle = OperationHandle(
            operation_id=observed.stack_id or desired.name,
            stack_name=desired.name,
            stack_id=observed.stack_id,
            action='settle',
            expected_terminal_statuses=STABLE_STATUSES
        )
        self.tracker.await_operation(handle, cancel=cancel)
        return self._fetch(desired, cancel)

    def _resolve_drift(self, desired: StackDescriptor, observed: ObservedStack,
                       cancel: CancellationToken) -> ObservedStack:
        """Scan for drift when the plan would otherwise rest on an unconfirmed drift status.

        With ``detect_drift`` set every healthy stack is scanned. Otherwise a
        scan runs only when the stack matches its configuration and its drift
        status is neither IN_SYNC nor DRIFTED.
        """
        if observed.status not in HEALTHY_STATUSES:
            return observed
        if self.settings.detect_drift:
            return self._refresh_drift(desired, observed, cancel)
        if observed.drift_status in (DriftStatus.IN_SYNC, DriftStatus.DRIFTED):
            return observed
        if observed.status == StackStatus.DRIFTED or self.differ.find_differences(desired, observed):
            return observed
        self.logger.info(
            f"Drift status is {observed.drift_status.value}; scanning before planning",
            extra={'stack': desired.identity}
        )
        return self._refresh_drift(desired, observed, cancel)

    def _refresh_drift(self, desired: StackDescriptor, observed: ObservedStack,
                       cancel: CancellationToken) -> ObservedStack:
        """Run a drift scan and apply its outcome to the observed stack."""
        detection_id = self.client.detect_stack_drift(desired.name)
        result = self.tracker.await_operation(
            drift_detection_handle(desired.name, detection_id),
            timeout=self.settings.drift_timeout,
            cancel=cancel
        )
        drift_status = result.drift.stack_drift_status if result.drift else DriftStatus.UNKNOWN
        self.logger.info(f"Drift status: {drift_status.value}", extra={'stack': desired.identity})
        return observed.model_copy(update={'drift_status': drift_status})

    def _submit(self, action: PlannedAction) -> OperationHandle:
        """Submit one mutating action. Submission failures are never retried."""
        desired = action.descriptor
        self.logger.info(
            f"Submitting {action.action_type.value}: {action.reason}",
            extra={'stack': desired.identity, 'operation': action.action_type.value}
        )
        if action.action_type == ActionType.CREATE:
            return self.client.create_stack(desired)
        if action.action_type == ActionType.UPDATE:
            return self.client.update_stack(desired)
        if action.action_type == ActionType.DELETE:
            return self.client.delete_stack(desired.name, stack_id=action.stack_id)
        raise ValueError(f"Action {action.action_type.value} cannot be submitted")

    def _attach_failure_events(self, error: OperationFailedError, handle: OperationHandle) -> None:
        """Add the failed resources' reasons from recent stack events to the error."""
        try:
            events = self.client.describe_stack_events(
                handle.stack_id or handle.stack_name, limit=FAILURE_EVENT_LIMIT
            )
        except ReconcileError as e:
            self.logger.warning(
                f"Could not read stack events: {e.message}",
                extra={'stack': handle.stack_name}
            )
            return

        reasons = [
            f"{event.logical_resource_id} ({event.resource_status}): {event.status_reason}"
            for event in events
            if event.is_failure and (event.timestamp is None or event.timestamp >= handle.submitted_at)
        ]
        if reasons:
            error.context.additional_info['failure_reasons'] = reasons

    def _verify(self, desired: StackDescriptor, handle: OperationHandle,
                cancel: CancellationToken, resolves_drift: bool = False) -> ObservedStack:
        """Re-read the stack and check it matches what was submitted.

        When the update was planned to correct drift, a fresh drift scan must
        no longer report DRIFTED.
        """
        observed = self._fetch(desired, cancel)

        if not handle.is_expected(observed.status):
            raise DivergenceError(
                f"Stack is {observed.status.value} after {handle.action}; expected one of "
                f"{', '.join(sorted(handle.expected_terminal_statuses))}",
                context=ErrorContext(operation_id=handle.operation_id)
            )

        differences = self.differ.find_differences(desired, observed, compare_template=False)
        if differences:
            raise DivergenceError(
                f"Stack does not match the desired configuration after {handle.action}: "
                + "; ".join(differences),
                context=ErrorContext(operation_id=handle.operation_id)
            )

        if resolves_drift:
            observed = self._check_drift_resolved(desired, handle, observed, cancel)

        self.logger.info(f"Verified stack is {observed.status.value}", extra={'stack': desired.identity})
        return observed

    def _check_drift_resolved(self, desired: StackDescriptor, handle: OperationHandle,
                              observed: ObservedStack, cancel: CancellationToken) -> ObservedStack:
        suggestions = [
            "Correct the drifted resources out of band (for example, import or recreate them)",
            "Run 'stackrecon drift' to list the drifted resources",
        ]
        if handle.no_changes:
            # The stack never changed, so the drift is still there
            raise DivergenceError(
                "CloudFormation reported no updates to perform; resource drift persists and "
                "must be corrected out of band",
                state_unknown=False,
                context=ErrorContext(operation_id=handle.operation_id),
                suggestions=suggestions
            )

        observed = self._refresh_drift(desired, observed, cancel)
        if observed.drift_status == DriftStatus.DRIFTED:
            raise DivergenceError(
                f"Stack is still DRIFTED after {handle.action}; resource drift must be "
                "corrected out of band",
                state_unknown=False,
                context=ErrorContext(operation_id=handle.operation_id),
                suggestions=suggestions
            )
        return observed
