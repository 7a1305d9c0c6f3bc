"""
Apply executor: walks a plan and provisions each descriptor in order.

Execution is sequential because later resources need the ids of earlier
ones. A failing step halts the run; nothing already applied is rolled back,
and the partial result is always returned so a re-run can reconcile from it.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .descriptors.models import ProvisionedResource, ResourceDescriptor, ResourceKind
from .errors import ApplyCancelled, ProviderError, VpcPlanError
from .events import EventTypes, emit_event
from .planner.plan import Plan
from .provider.base import Provider
from .reconcile import StateReconciler
from .report import build_report
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    """Outcome of an apply run."""
    status: str = "succeeded"   # "succeeded" | "failed" | "cancelled"
    provisioned: List[ProvisionedResource] = field(default_factory=list)
    failed_descriptor: Optional[ResourceDescriptor] = None
    error: Optional[Exception] = None
    run_id: Optional[str] = None
    command: str = "apply"

    @property
    def ok(self) -> bool:
        return self.status == "succeeded"

    @property
    def resources(self) -> List[ProvisionedResource]:
        return self.provisioned

    @property
    def created(self) -> int:
        return sum(1 for r in self.provisioned if r.action == "created")

    @property
    def reused(self) -> int:
        return sum(1 for r in self.provisioned if r.action == "reused")

    @property
    def refs(self) -> Dict[str, str]:
        return {r.descriptor.key: r.resource_id for r in self.provisioned}

    def to_dict(self) -> Dict[str, Any]:
        return build_report(self)


@dataclass
class TeardownResult:
    """Outcome of a destroy run."""
    status: str = "succeeded"
    deleted: List[ProvisionedResource] = field(default_factory=list)
    skipped: List[ResourceDescriptor] = field(default_factory=list)
    failed_descriptor: Optional[ResourceDescriptor] = None
    error: Optional[Exception] = None
    run_id: Optional[str] = None
    command: str = "destroy"

    @property
    def ok(self) -> bool:
        return self.status == "succeeded"

    @property
    def resources(self) -> List[ProvisionedResource]:
        return self.deleted

    def to_dict(self) -> Dict[str, Any]:
        return build_report(self)


class ApplyExecutor:
    """
    Applies a Plan against a provider.

    Args:
        provider: Explicit provider client handle
        reconciler: Reconciler to use; built from the provider if omitted
        retry: Retry policy for transient provider errors
        cancel_event: Set to request cancellation; checked between steps only
        run_id: When given, progress events are written to the run's log
    """

    def __init__(self, provider: Provider, reconciler: Optional[StateReconciler] = None,
                 retry: Optional[RetryPolicy] = None,
                 cancel_event: Optional[threading.Event] = None,
                 run_id: Optional[str] = None):
        self.provider = provider
        self.reconciler = reconciler or StateReconciler(provider)
        self.retry = retry or RetryPolicy()
        self.cancel_event = cancel_event or threading.Event()
        self.run_id = run_id

    def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.run_id:
            emit_event(self.run_id, event_type, data)

    def _on_retry(self, descriptor: ResourceDescriptor):
        def record(attempt: int, error: ProviderError, delay: float) -> None:
            self._emit(EventTypes.RETRY, {
                "key": descriptor.key,
                "attempt": attempt,
                "code": error.code,
                "delay_seconds": delay,
            })
        return record

    @staticmethod
    def _vpc_id(plan: Plan, refs: Dict[str, str]) -> Optional[str]:
        for descriptor in plan:
            if descriptor.kind == ResourceKind.VPC:
                return refs.get(descriptor.key)
        return None

    def _ensure(self, descriptor: ResourceDescriptor, refs: Dict[str, str],
                vpc_id: Optional[str], attempted: List[bool]) -> str:
        # Lookup runs on every attempt so a create that actually landed before a
        # transient error is reused rather than duplicated.
        existing = self.reconciler.lookup(descriptor, vpc_id)
        if existing:
            return existing
        attempted.append(True)
        return self.provider.create(descriptor, refs)

    def _provision(self, descriptor: ResourceDescriptor, refs: Dict[str, str],
                   vpc_id: Optional[str]) -> Tuple[str, str, int]:
        """
        Find or create one resource, then configure it.

        Configuration is retried separately from the create so a transient
        failure after the resource exists still finishes its routes, rules and
        attachments instead of treating the bare resource as done.

        Returns:
            (resource_id, action, attempts) where attempts counts every call
            made across both phases
        """
        attempted: List[bool] = []
        on_retry = self._on_retry(descriptor)
        resource_id, ensure_attempts = self.retry.call(
            self._ensure, descriptor, refs, vpc_id, attempted, on_retry=on_retry,
        )
        _, configure_attempts = self.retry.call(
            self.provider.configure, descriptor, resource_id, {**refs, descriptor.key: resource_id},
            on_retry=on_retry,
        )
        action = "created" if attempted else "reused"
        return resource_id, action, ensure_attempts + configure_attempts - 1

    def _fail(self, result, descriptor: ResourceDescriptor, error: Exception, event: str) -> None:
        result.status = "failed"
        result.failed_descriptor = descriptor
        result.error = error
        hint = getattr(error, "hint", "")
        logger.error(f"{descriptor.key} failed: {error}" + (f" ({hint})" if hint else ""))
        self._emit(EventTypes.RESOURCE_FAILED, {
            "key": descriptor.key,
            "error": str(error),
            "error_type": type(error).__name__,
            "hint": hint,
        })
        self._emit(event, {"key": descriptor.key, "error": str(error)})

    def _cancel(self, result, next_descriptor: ResourceDescriptor, event: str) -> None:
        result.status = "cancelled"
        result.error = ApplyCancelled(f"Cancelled before {next_descriptor.key}")
        logger.warning(f"Run cancelled before {next_descriptor.key}")
        self._emit(event, {"next": next_descriptor.key})

    def apply(self, plan: Plan) -> ApplyResult:
        """
        Apply every descriptor in plan order.

        Args:
            plan: Plan from the dependency planner

        Returns:
            ApplyResult; on failure it lists what was provisioned so far
        """
        result = ApplyResult(run_id=self.run_id)
        refs: Dict[str, str] = {}
        logger.info(f"Applying plan with {len(plan)} steps")
        self._emit(EventTypes.APPLY_START, {"steps": len(plan)})

        for step, descriptor in enumerate(plan, start=1):
            if self.cancel_event.is_set():
                self._cancel(result, descriptor, EventTypes.APPLY_CANCELLED)
                return result

            logger.info(f"[{step}/{len(plan)}] {descriptor.label}")
            try:
                resource_id, action, attempts = self._provision(descriptor, refs, self._vpc_id(plan, refs))
            except VpcPlanError as e:
                self._fail(result, descriptor, e, EventTypes.APPLY_FAILED)
                return result
            except Exception as e:
                logger.exception(f"Unexpected error applying {descriptor.key}")
                self._fail(result, descriptor, e, EventTypes.APPLY_FAILED)
                return result

            refs[descriptor.key] = resource_id
            result.provisioned.append(ProvisionedResource(
                resource_id=resource_id, descriptor=descriptor, action=action, attempts=attempts,
            ))
            event = EventTypes.RESOURCE_CREATED if action == "created" else EventTypes.RESOURCE_REUSED
            self._emit(event, {"key": descriptor.key, "resource_id": resource_id, "attempts": attempts})
            if action == "reused":
                logger.info(f"Reusing existing {descriptor.label}: {resource_id}")

        logger.info(f"Apply complete: {result.created} created, {result.reused} reused")
        self._emit(EventTypes.APPLY_DONE, {"created": result.created, "reused": result.reused})
        return result

    def destroy(self, plan: Plan) -> TeardownResult:
        """
        Delete the plan's resources in reverse topological order.

        Each descriptor is first reconciled to find its id; descriptors with no
        existing resource are skipped. Halts at the first failure.

        Args:
            plan: Plan describing the resources to remove

        Returns:
            TeardownResult listing deleted and skipped descriptors
        """
        result = TeardownResult(run_id=self.run_id)
        refs: Dict[str, str] = {}
        self._emit(EventTypes.DESTROY_START, {"steps": len(plan)})

        for descriptor in plan:
            try:
                existing, _ = self.retry.call(
                    self.reconciler.lookup, descriptor, self._vpc_id(plan, refs),
                    on_retry=self._on_retry(descriptor),
                )
            except VpcPlanError as e:
                self._fail(result, descriptor, e, EventTypes.DESTROY_FAILED)
                return result
            except Exception as e:
                logger.exception(f"Unexpected error looking up {descriptor.key}")
                self._fail(result, descriptor, e, EventTypes.DESTROY_FAILED)
                return result
            if existing:
                refs[descriptor.key] = existing

        for descriptor in plan.reversed_order():
            if self.cancel_event.is_set():
                self._cancel(result, descriptor, EventTypes.DESTROY_CANCELLED)
                return result

            resource_id = refs.get(descriptor.key)
            if resource_id is None:
                logger.info(f"{descriptor.label} does not exist, skipping")
                result.skipped.append(descriptor)
                continue

            try:
                _, attempts = self.retry.call(
                    self.provider.delete, descriptor, resource_id, refs,
                    on_retry=self._on_retry(descriptor),
                )
            except VpcPlanError as e:
                self._fail(result, descriptor, e, EventTypes.DESTROY_FAILED)
                return result
            except Exception as e:
                logger.exception(f"Unexpected error deleting {descriptor.key}")
                self._fail(result, descriptor, e, EventTypes.DESTROY_FAILED)
                return result

            result.deleted.append(ProvisionedResource(
                resource_id=resource_id, descriptor=descriptor, action="deleted", attempts=attempts,
            ))
            self._emit(EventTypes.RESOURCE_DELETED, {"key": descriptor.key, "resource_id": resource_id})

        logger.info(f"Destroy complete: {len(result.deleted)} deleted, {len(result.skipped)} skipped")
        self._emit(EventTypes.DESTROY_DONE, {"deleted": len(result.deleted), "skipped": len(result.skipped)})
        return result
