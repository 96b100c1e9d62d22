"""Association engine: bind classified instances to the reservation group.

Bindings are fetched once in a batch up front; instances already bound to
the group are skipped without a mutation call. Each bind call is paced by
the token bucket, and a failed instance never stops the batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from odcr.binding_states import BindingState, can_transition, summary_bucket
from odcr.errors import ProviderError, StepTimeout, error_category
from odcr.models import ComputeInstance, DemandKey, ReservationGroup, Scope
from odcr.pacing import RunDeadline, TokenBucket, call_with_deadline
from odcr.provider import CapacityProvider

logger = logging.getLogger(__name__)


@dataclass
class BindingOutcome:
    instance: str
    state: BindingState = BindingState.UNBOUND
    reservation: Optional[str] = None
    reason: Optional[str] = None
    category: Optional[str] = None

    def move_to(self, state: BindingState, transitions: dict | None = None) -> None:
        can_transition(self.state, state, transitions)
        self.state = state

    def to_dict(self) -> dict:
        payload = {"instance": self.instance, "state": self.state.value, "reservation": self.reservation}
        if self.reason:
            payload["reason"] = self.reason
            payload["category"] = self.category
        return payload


@dataclass
class AssociationReport:
    outcomes: List[BindingOutcome] = field(default_factory=list)
    bind_calls: int = 0

    def _count(self, bucket: str) -> int:
        return sum(1 for o in self.outcomes if summary_bucket(o.state) == bucket)

    @property
    def bound(self) -> int:
        return self._count("bound")

    @property
    def skipped(self) -> int:
        return self._count("skipped")

    @property
    def failed(self) -> int:
        return self._count("failed")

    @property
    def failures(self) -> List[BindingOutcome]:
        return [o for o in self.outcomes if summary_bucket(o.state) == "failed"]

    def to_dict(self) -> dict:
        return {
            "bound": self.bound,
            "skipped": self.skipped,
            "failed": self.failed,
            "bind_calls": self.bind_calls,
            "failures": [o.to_dict() for o in self.failures],
        }


def _prefetch_bindings(
    provider: CapacityProvider,
    scope: Scope,
    instances: Sequence[ComputeInstance],
    deadline: Optional[RunDeadline],
) -> Dict[str, Optional[str]]:
    names = [i.name for i in instances]
    try:
        fetched = call_with_deadline(
            deadline, "prefetch bindings", provider.get_instance_bindings, scope, names
        )
    except (ProviderError, StepTimeout) as e:
        logger.warning(f"Binding prefetch failed, using inventory bindings instead: {e}")
        fetched = {}
    return {i.name: fetched.get(i.name, i.current_reservation_binding) for i in instances}


def associate_instances(
    provider: CapacityProvider,
    scope: Scope,
    instances: Sequence[ComputeInstance],
    group: ReservationGroup,
    reservation_map: Mapping[DemandKey, str],
    limiter: Optional[TokenBucket] = None,
    deadline: Optional[RunDeadline] = None,
) -> AssociationReport:
    report = AssociationReport()
    classified = sorted((i for i in instances if i.is_classified), key=lambda i: i.name)
    logger.info(
        f"Associating {len(classified)} VM(s) with capacity reservation group '{group.name}'..."
    )
    if not classified:
        logger.warning("No VMs in availability zones to associate")
        return report

    current = _prefetch_bindings(provider, scope, classified, deadline)

    for inst in classified:
        outcome = BindingOutcome(instance=inst.name)
        report.outcomes.append(outcome)

        target = reservation_map.get(inst.demand_key)
        if target is None:
            outcome.move_to(BindingState.NO_RESERVATION)
            outcome.reason = (
                f"No reservation for size '{inst.size_class}' in zone '{inst.zone}'"
            )
            outcome.category = "no_reservation"
            logger.error(f"Skipping VM '{inst.name}': {outcome.reason}")
            continue
        outcome.reservation = target

        if group.matches(current.get(inst.name)):
            outcome.move_to(BindingState.SKIPPED_ALREADY_BOUND)
            logger.info(f"VM '{inst.name}' already associated with '{group.name}'")
            continue

        step = f"bind {inst.name}"
        try:
            if deadline is not None and deadline.expired():
                raise StepTimeout(step, 0)
            if limiter is not None:
                limiter.acquire()
            report.bind_calls += 1
            logger.info(f"Associating VM: {inst.name} (Size: {inst.size_class}, Zone: {inst.zone})")
            call_with_deadline(
                deadline,
                step,
                provider.bind_instance_to_group,
                scope,
                inst.name,
                group,
            )
        except (ProviderError, StepTimeout) as e:
            outcome.move_to(BindingState.BINDING_FAILED)
            outcome.reason = str(e)
            outcome.category = error_category(e).value
            logger.error(f"Failed to associate VM '{inst.name}' with capacity reservation group: {e}")
            continue

        outcome.move_to(BindingState.BOUND)
        inst.current_reservation_binding = group.id or group.name
        logger.info(f"Successfully associated VM '{inst.name}' with capacity reservation group")

    logger.info(
        f"VM Association Summary: {report.bound} associated, {report.skipped} already associated, "
        f"{report.failed} failed"
    )
    return report
