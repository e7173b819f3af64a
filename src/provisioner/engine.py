"""Apply engine: execute a plan against providers and persist state.

This module implements the apply loop:
1. Acquire the state lock (renewed in the background for the whole run)
2. Refresh every recorded resource from its provider
3. Compute the plan and ask for confirmation
4. Delete removed nodes, dependents first
5. Apply graph nodes in dependency order with bounded concurrency
6. Persist the snapshot after every completed operation

SAFETY:
- A node starts only after all of its dependencies succeeded
- Each node's diff is recomputed with real upstream values right before it runs
- The first failure or a shutdown request stops scheduling; in-flight
  operations finish and are recorded before the lock is released, even when
  the run itself is cancelled
- Remote calls run with a timeout; transient errors are retried with
  exponential backoff and jitter, then escalated to ProviderError
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import random
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from .config import Config
from .errors import (
    LockContentionError,
    ProviderError,
    ProvisionerError,
    RunInterruptedError,
    TransientError,
)
from .graph import ResourceGraph
from .planner import Action, Plan, PlannedChange, decide_action, diff_inputs, plan_changes
from .provenance import ChangeSummary, RunProvenance, get_provenance_logger
from .providers import Provider
from .resources import ROLE_ASSIGNMENT, ResourceType, get_resource_type
from .security import log_security_audit_event
from .state import ResourceState, StateBackend, StateLock, StateSnapshot
from .values import Reference, Sensitive, resolve

logger = logging.getLogger(__name__)

T = TypeVar("T")

ConfirmCallback = Callable[[Plan], bool]


@dataclass
class OperationRecord:
    """One completed remote operation."""

    node_id: str
    action: Action
    attempts: int = 1
    duration_seconds: float = 0.0


@dataclass
class ApplyResult:
    """Result of an apply or destroy run."""

    operation: str
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    plan: Plan | None = None
    operations: list[OperationRecord] = field(default_factory=list)
    failed_node: str | None = None
    not_started: list[str] = field(default_factory=list)
    cancelled: bool = False
    outputs: dict[str, Any] = field(default_factory=dict)
    serial: int = 0
    lineage: str = ""
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the run succeeded."""
        return self.error is None

    def count(self, action: Action) -> int:
        return sum(1 for op in self.operations if op.action == action)


class Engine:
    """Applies resource graphs against a locked state snapshot.

    Args:
        backend: State backend holding the snapshot and its lock.
        providers: Resource type name -> provider.
        config: Runtime configuration (retries, timeouts, parallelism).
    """

    def __init__(
        self,
        backend: StateBackend,
        providers: Mapping[str, Provider],
        config: Config,
    ) -> None:
        self._backend = backend
        self._providers = dict(providers)
        self._config = config
        self._state_lock = asyncio.Lock()
        self._lock: StateLock | None = None
        self._lock_lost: Exception | None = None
        self._shutdown_requested = False

    @property
    def backend(self) -> StateBackend:
        return self._backend

    def shutdown(self) -> None:
        """Stop scheduling new operations; running ones finish and are recorded."""
        if not self._shutdown_requested:
            logger.warning("Shutdown requested, finishing running operations")
        self._shutdown_requested = True

    # =========================================================================
    # Public operations
    # =========================================================================

    async def plan(self, graph: ResourceGraph, *, refresh: bool = True) -> Plan:
        """Compute a plan without changing anything.

        The lock is held while reading so the plan reflects a consistent
        snapshot. The snapshot is never written.
        """
        async with self._locked("plan"):
            snapshot = self._backend.read()
            realized = await self.refresh(snapshot) if refresh else None
            return plan_changes(graph, snapshot, realized)

    async def apply(
        self,
        graph: ResourceGraph,
        confirm: ConfirmCallback | None = None,
    ) -> ApplyResult:
        """Converge realized infrastructure to the graph.

        Args:
            graph: Validated resource graph.
            confirm: Called with the plan before any change; returning False
                cancels the run. None applies without asking.

        Returns:
            ApplyResult. Failures are recorded on the result, not raised,
            except lock contention which happens before anything runs.
        """
        result = ApplyResult(operation="apply")
        provenance = get_provenance_logger().create_provenance(
            operation="apply",
            subscription_id=self._config.subscription_id,
            state_location=self._backend.location,
            actor=self._config.lock_owner,
        )

        async with self._locked("apply"):
            snapshot = self._backend.read()
            try:
                realized = await self.refresh(snapshot)
                plan = plan_changes(graph, snapshot, realized)
                result.plan = plan

                if confirm is not None and plan.has_changes and not confirm(plan):
                    result.cancelled = True
                    logger.info("Apply cancelled by operator")
                else:
                    await self._execute_plan(graph, snapshot, plan, realized, result)
            except ProvisionerError as e:
                result.error = e
            finally:
                result.end_time = datetime.now(UTC)
                result.serial = snapshot.serial
                result.lineage = snapshot.lineage
                result.outputs = dict(snapshot.outputs)

        self._finish(result, provenance)
        return result

    async def destroy(self, confirm: ConfirmCallback | None = None) -> ApplyResult:
        """Delete every recorded resource, dependents first."""
        result = ApplyResult(operation="destroy")
        provenance = get_provenance_logger().create_provenance(
            operation="destroy",
            subscription_id=self._config.subscription_id,
            state_location=self._backend.location,
            actor=self._config.lock_owner,
        )

        async with self._locked("destroy"):
            snapshot = self._backend.read()
            plan = Plan(changes=[
                PlannedChange(
                    node_id=node_id,
                    type=snapshot.resources[node_id].type,
                    action=Action.DELETE,
                )
                for node_id in snapshot.destroy_order()
            ])
            result.plan = plan

            try:
                if confirm is not None and plan.has_changes and not confirm(plan):
                    result.cancelled = True
                    logger.info("Destroy cancelled by operator")
                else:
                    await self._delete_nodes(
                        snapshot, [c.node_id for c in plan.changes], result
                    )
                    if not snapshot.resources and snapshot.outputs:
                        snapshot.outputs = {}
                        await self._persist(snapshot)
            except ProvisionerError as e:
                result.error = e
            finally:
                result.end_time = datetime.now(UTC)
                result.serial = snapshot.serial
                result.lineage = snapshot.lineage
                result.outputs = dict(snapshot.outputs)

        self._finish(result, provenance)
        return result

    async def refresh(self, snapshot: StateSnapshot) -> dict[str, dict[str, Any] | None]:
        """Read every recorded resource from its provider.

        Returns:
            Node id -> realized outputs, or None if the resource is gone.
        """
        semaphore = asyncio.Semaphore(self._config.max_parallelism)

        async def read_one(resource: ResourceState) -> tuple[str, dict[str, Any] | None]:
            resource_type = get_resource_type(resource.type)
            provider = self._provider_for(resource_type)
            async with semaphore:
                outputs, _ = await self._call_with_retry(
                    resource.node_id,
                    "read",
                    functools.partial(provider.read, resource.node_id, resource_type, resource),
                )
            if outputs is not None:
                outputs = _tag_sensitive(resource_type, outputs)
            return resource.node_id, outputs

        results = await asyncio.gather(
            *(read_one(resource) for resource in snapshot.resources.values())
        )
        return dict(results)

    # =========================================================================
    # Execution
    # =========================================================================

    async def _execute_plan(
        self,
        graph: ResourceGraph,
        snapshot: StateSnapshot,
        plan: Plan,
        realized: dict[str, dict[str, Any] | None],
        result: ApplyResult,
    ) -> None:
        deletions = [c.node_id for c in plan.changes if c.action == Action.DELETE]
        if deletions:
            await self._delete_nodes(snapshot, deletions, result)
            if result.error is not None:
                result.not_started.extend(graph.nodes)
                return

        missing = plan.missing
        drifted = plan.drifted
        reevaluate = {c.node_id for c in plan.changes if c.requires_reevaluation}

        async def apply_node(node_id: str) -> None:
            await self._apply_node(
                graph,
                snapshot,
                node_id,
                result,
                missing=node_id in missing,
                drifted=node_id in drifted,
                reevaluate=node_id in reevaluate,
                realized=realized.get(node_id),
            )

        await self._schedule(graph.topological_sort(), graph.get_ready, apply_node, result)

        if result.error is None:
            outputs = {
                name: resolve(value, functools.partial(_lookup, snapshot))
                for name, value in graph.outputs.items()
            }
            if outputs != snapshot.outputs:
                snapshot.outputs = outputs
                await self._persist(snapshot)

    async def _apply_node(
        self,
        graph: ResourceGraph,
        snapshot: StateSnapshot,
        node_id: str,
        result: ApplyResult,
        *,
        missing: bool,
        drifted: bool,
        reevaluate: bool,
        realized: dict[str, Any] | None,
    ) -> None:
        node = graph.nodes[node_id]
        resource_type = get_resource_type(node.type)
        provider = self._provider_for(resource_type)
        lookup = functools.partial(_lookup, snapshot)

        # Every dependency has completed, so every value is known
        desired = {name: resolve(value, lookup) for name, value in node.inputs.items()}
        recorded = snapshot.get(node_id)

        if recorded is not None and reevaluate and not missing:
            current, _ = await self._call_with_retry(
                node_id,
                "read",
                functools.partial(provider.read, node_id, resource_type, recorded),
            )
            missing = current is None
            if current is not None:
                realized = _tag_sensitive(resource_type, current)

        if recorded is None or missing:
            action = Action.CREATE
        else:
            action = decide_action(diff_inputs(resource_type, recorded.inputs, desired))
            if action == Action.NO_OP and drifted:
                action = Action.UPDATE

        started = datetime.now(UTC)
        attempts = 0

        match action:
            case Action.NO_OP:
                assert recorded is not None
                outputs = dict(realized or recorded.outputs)
                provider_id = recorded.provider_id
            case Action.CREATE:
                created, attempts = await self._call_with_retry(
                    node_id,
                    "create",
                    functools.partial(provider.create, node_id, resource_type, desired),
                )
                outputs, provider_id = created.outputs, created.provider_id
            case Action.UPDATE:
                assert recorded is not None
                updated, attempts = await self._call_with_retry(
                    node_id,
                    "update",
                    functools.partial(provider.update, node_id, resource_type, desired, recorded),
                )
                outputs, provider_id = updated.outputs, updated.provider_id
            case Action.REPLACE:
                assert recorded is not None
                _, delete_attempts = await self._call_with_retry(
                    node_id,
                    "delete",
                    functools.partial(provider.delete, node_id, resource_type, recorded),
                )
                async with self._state_lock:
                    snapshot.remove(node_id)
                await self._persist(snapshot)
                created, attempts = await self._call_with_retry(
                    node_id,
                    "create",
                    functools.partial(provider.create, node_id, resource_type, desired),
                )
                attempts += delete_attempts
                outputs, provider_id = created.outputs, created.provider_id
            case _:
                raise ProviderError(f"Unexpected action {action.value}", node_id=node_id)

        # Derived outputs only reference other, already applied nodes
        outputs = _tag_sensitive(resource_type, outputs)
        outputs.update({name: resolve(value, lookup) for name, value in node.outputs.items()})

        if action == Action.NO_OP:
            assert recorded is not None
            if outputs == recorded.outputs:
                return
            logger.info("Refreshing recorded outputs", extra={"node_id": node_id})

        async with self._state_lock:
            snapshot.put(ResourceState(
                node_id=node_id,
                type=node.type,
                provider_id=provider_id,
                inputs=desired,
                outputs=outputs,
                depends_on=node.dependencies(),
            ))
        await self._persist(snapshot)

        if action != Action.NO_OP:
            result.operations.append(OperationRecord(
                node_id=node_id,
                action=action,
                attempts=attempts,
                duration_seconds=(datetime.now(UTC) - started).total_seconds(),
            ))
            logger.info(
                "Node applied",
                extra={"node_id": node_id, "action": action.value, "attempts": attempts},
            )
            if node.type == ROLE_ASSIGNMENT:
                log_security_audit_event(
                    "role_assignment_applied",
                    target_resource=provider_id,
                    action=action.value,
                    result="success",
                )

    async def _delete_nodes(
        self,
        snapshot: StateSnapshot,
        node_ids: list[str],
        result: ApplyResult,
    ) -> None:
        """Delete recorded nodes; a node waits for its recorded dependents."""
        targets = set(node_ids)
        waits_for = {
            node_id: set(snapshot.dependents_of(node_id)) & targets for node_id in node_ids
        }

        def get_ready(completed: set[str], started: set[str]) -> list[str]:
            return [
                node_id
                for node_id in node_ids
                if node_id not in started and waits_for[node_id] <= completed
            ]

        async def delete_node(node_id: str) -> None:
            recorded = snapshot.resources[node_id]
            resource_type = get_resource_type(recorded.type)
            provider = self._provider_for(resource_type)
            started = datetime.now(UTC)
            _, attempts = await self._call_with_retry(
                node_id,
                "delete",
                functools.partial(provider.delete, node_id, resource_type, recorded),
            )
            async with self._state_lock:
                snapshot.remove(node_id)
            await self._persist(snapshot)
            result.operations.append(OperationRecord(
                node_id=node_id,
                action=Action.DELETE,
                attempts=attempts,
                duration_seconds=(datetime.now(UTC) - started).total_seconds(),
            ))
            logger.info("Node deleted", extra={"node_id": node_id, "attempts": attempts})

        await self._schedule(node_ids, get_ready, delete_node, result)

    async def _schedule(
        self,
        order: list[str],
        get_ready: Callable[[set[str], set[str]], list[str]],
        run: Callable[[str], Awaitable[None]],
        result: ApplyResult,
    ) -> None:
        """Run nodes with bounded concurrency, never before what they wait for.

        `get_ready(completed, started)` returns the nodes that may start. After
        the first failure or a shutdown request nothing new starts. However
        this loop is left, including by cancellation, running operations are
        awaited and recorded first, so the lock is never released under them.
        """
        completed: set[str] = set()
        started: set[str] = set()
        running: dict[asyncio.Task[None], str] = {}

        try:
            while True:
                if result.error is None and self._lock_lost is not None:
                    result.error = self._lock_lost
                if result.error is None and self._shutdown_requested:
                    result.error = RunInterruptedError(
                        "Run interrupted; running operations were completed and recorded"
                    )

                if result.error is None:
                    for node_id in get_ready(completed, started):
                        if len(running) >= self._config.max_parallelism:
                            break
                        started.add(node_id)
                        running[asyncio.create_task(run(node_id))] = node_id

                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    node_id = running.pop(task)
                    error = task.exception()
                    if error is None:
                        completed.add(node_id)
                    elif isinstance(error, ProvisionerError):
                        self._record_failure(node_id, error, result)
                    else:
                        raise error
        finally:
            if running:
                await self._drain(running, completed, result)
            result.not_started.extend(n for n in order if n not in started)

    async def _drain(
        self,
        running: dict[asyncio.Task[None], str],
        completed: set[str],
        result: ApplyResult,
    ) -> None:
        """Wait for operations already handed to providers and record them."""
        logger.warning(
            "Waiting for running operations before releasing the state lock",
            extra={"node_ids": sorted(running.values())},
        )
        pending: set[asyncio.Task[None]] = set(running)
        while pending:
            try:
                _, pending = await asyncio.shield(asyncio.wait(pending))
            except asyncio.CancelledError:
                # Already unwinding; a repeated cancel must not cut the wait short
                continue

        for task, node_id in running.items():
            if task.cancelled():
                continue
            error = task.exception()
            if error is None:
                completed.add(node_id)
            elif isinstance(error, ProvisionerError):
                self._record_failure(node_id, error, result)
            else:
                logger.error(
                    "Operation failed",
                    exc_info=error,
                    extra={"node_id": node_id, "error": str(error)},
                )

    @staticmethod
    def _record_failure(node_id: str, error: ProvisionerError, result: ApplyResult) -> None:
        logger.error("Operation failed", extra={"node_id": node_id, "error": str(error)})
        if result.error is None:
            result.error = error
            result.failed_node = node_id

    async def _call_with_retry(
        self,
        node_id: str,
        action: str,
        operation: Callable[[], T],
    ) -> tuple[T, int]:
        """Run a provider call with timeout and retries.

        Returns:
            The call's result and the number of attempts used.

        Raises:
            ProviderError: If the call is rejected or retries are exhausted.
        """
        max_attempts = self._config.max_provider_retries + 1
        last_error: TransientError | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                value = await self._execute_with_timeout(
                    operation,
                    timeout_seconds=self._config.operation_timeout_seconds,
                    operation_name=f"{action} {node_id}",
                )
                return value, attempt
            except TransientError as e:
                last_error = e

                if attempt < max_attempts:
                    # Exponential backoff with jitter
                    backoff = min(
                        self._config.retry_backoff_base_seconds * (2 ** (attempt - 1)),
                        self._config.retry_backoff_max_seconds,
                    )
                    jitter = random.uniform(0, backoff * 0.2)
                    wait_time = backoff + jitter

                    logger.warning(
                        "Transient provider error, retrying",
                        extra={
                            "node_id": node_id,
                            "action": action,
                            "attempt": attempt,
                            "max_attempts": max_attempts,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )

                    await asyncio.sleep(wait_time)

        raise ProviderError(
            f"Failed to {action} resource after {max_attempts} attempts",
            node_id=node_id,
            provider_message=str(last_error),
        ) from last_error

    async def _execute_with_timeout(
        self,
        operation: Callable[[], T],
        timeout_seconds: int,
        operation_name: str,
    ) -> T:
        """Run a blocking provider call in an executor with a timeout.

        Raises:
            TransientError: If the call exceeds the timeout.
        """
        loop = asyncio.get_event_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, operation),
                timeout=timeout_seconds,
            )
        except TimeoutError as e:
            logger.error(
                f"{operation_name} timed out",
                extra={"timeout_seconds": timeout_seconds},
            )
            raise TransientError(f"{operation_name} timed out after {timeout_seconds}s") from e

    # =========================================================================
    # State and locking
    # =========================================================================

    async def _persist(self, snapshot: StateSnapshot) -> None:
        """Write the snapshot under the held lock, bumping its serial."""
        if self._lock is None:
            raise LockContentionError("State lock is not held")
        async with self._state_lock:
            snapshot.serial += 1
            loop = asyncio.get_event_loop()
            await loop.run_in_executor(None, self._backend.write, snapshot, self._lock)

    @asynccontextmanager
    async def _locked(self, operation: str) -> AsyncIterator[StateLock]:
        """Hold the state lock, renewing its lease in the background."""
        loop = asyncio.get_event_loop()
        lock = await loop.run_in_executor(
            None,
            self._backend.acquire_lock,
            self._config.lock_owner,
            operation,
            self._config.lock_lease_seconds,
        )
        self._lock = lock
        self._lock_lost = None
        self._shutdown_requested = False
        renewal = asyncio.create_task(self._renew_lease())
        try:
            yield lock
        finally:
            renewal.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await renewal
            self._lock = None
            await loop.run_in_executor(None, self._backend.release_lock, lock)

    async def _renew_lease(self) -> None:
        lease = self._config.lock_lease_seconds
        loop = asyncio.get_event_loop()
        while True:
            await asyncio.sleep(lease / 2)
            if self._lock is None:
                return
            try:
                await loop.run_in_executor(
                    None, self._backend.renew_lock, self._lock, lease
                )
            except ProvisionerError as e:
                logger.error("State lock lost", extra={"error": str(e)})
                self._lock_lost = e
                return

    def _provider_for(self, resource_type: ResourceType) -> Provider:
        provider = self._providers.get(resource_type.name)
        if provider is None:
            raise ProviderError(f"No provider registered for resource type {resource_type.name}")
        return provider

    def _finish(self, result: ApplyResult, provenance: RunProvenance) -> None:
        """Stamp provenance and log the run result."""
        provenance.duration_seconds = result.duration_seconds
        provenance.lineage = result.lineage
        provenance.serial = result.serial
        provenance.cancelled = result.cancelled
        provenance.change_summary = ChangeSummary(
            create_count=result.count(Action.CREATE),
            update_count=result.count(Action.UPDATE),
            replace_count=result.count(Action.REPLACE),
            delete_count=result.count(Action.DELETE),
        )
        if result.plan is not None:
            provenance.drift_detected = bool(result.plan.drift)
        if result.error is not None:
            provenance.error = str(result.error)
            provenance.error_type = type(result.error).__name__
            provenance.failed_node = result.failed_node
        get_provenance_logger().log_provenance(provenance)


def _lookup(snapshot: StateSnapshot, ref: Reference) -> Any:
    """Realized value of a reference from the snapshot."""
    recorded = snapshot.get(ref.node_id)
    if recorded is None or ref.output not in recorded.outputs:
        raise ProviderError(
            f"Output {ref} is not available; its node has not been applied",
            node_id=ref.node_id,
            attribute=ref.output,
        )
    return recorded.outputs[ref.output]


def _tag_sensitive(resource_type: ResourceType, outputs: dict[str, Any]) -> dict[str, Any]:
    """Wrap the type's sensitive outputs, whatever the provider returned."""
    tagged = dict(outputs)
    for name in resource_type.sensitive_outputs:
        if name in tagged and not isinstance(tagged[name], Sensitive):
            tagged[name] = Sensitive(tagged[name])
    return tagged
