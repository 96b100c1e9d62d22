"""Reservation reconciliation engine.

Control flow for one run:
  inventory -> demand -> (dry run: plan and stop)
  -> preflight gate -> reservation group -> reservations -> associations

Fatal preconditions (no inventory, no group, capability not registered)
stop the run; everything per-item is collected in the report instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from odcr.association import AssociationReport, associate_instances
from odcr.binding_states import transitions_hash
from odcr.config import Settings
from odcr.demand import aggregate_demand
from odcr.errors import FatalPrecondition, ProviderError, StepTimeout
from odcr.inventory import collect_instances
from odcr.models import ComputeInstance, DemandSummary, ReservationGroup, Scope, group_zones
from odcr.notify import notify_webhook
from odcr.pacing import RunDeadline, TokenBucket, call_with_deadline
from odcr.preflight import PreflightResult, run_preflight
from odcr.provider import CapacityProvider
from odcr.provisioning import ProvisioningReport, ensure_reservation_group, provision_reservations
from odcr.reporting import Plan, build_plan, plan_to_dict, render_summary_text

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_FATAL = 2


@dataclass
class RunReport:
    scope: Scope
    mode: str
    location: str = ""
    instances: List[ComputeInstance] = field(default_factory=list)
    demand: DemandSummary = field(default_factory=DemandSummary)
    plan: Optional[Plan] = None
    preflight: Optional[PreflightResult] = None
    group: Optional[ReservationGroup] = None
    provisioning: Optional[ProvisioningReport] = None
    association: Optional[AssociationReport] = None
    fatal_error: Optional[str] = None

    @property
    def instance_count(self) -> int:
        return len(self.instances)

    @property
    def failure_count(self) -> int:
        failures = 0
        if self.provisioning is not None:
            failures += len(self.provisioning.failures)
        if self.association is not None:
            failures += self.association.failed
        return failures

    def exit_code(self, accept_partial: bool = True) -> int:
        if self.fatal_error:
            return EXIT_FATAL
        if self.failure_count and not accept_partial:
            return EXIT_PARTIAL
        return EXIT_OK

    def to_dict(self) -> dict:
        payload = {
            "mode": self.mode,
            "scope": {
                "subscription_id": self.scope.subscription_id,
                "resource_group": self.scope.resource_group,
                "location": self.location,
            },
            "instances": self.instance_count,
            "demand": [
                {"size": d.size_class, "zone": d.zone, "count": d.count}
                for d in self.demand.demands
            ],
            "unclassified": list(self.demand.unclassified),
            "fatal_error": self.fatal_error,
        }
        if self.plan is not None:
            payload["plan"] = plan_to_dict(self.plan)
        if self.preflight is not None:
            payload["preflight"] = self.preflight.to_dict()
        if self.group is not None:
            payload["group"] = {"name": self.group.name, "id": self.group.id}
        if self.provisioning is not None:
            payload["reservations"] = self.provisioning.to_dict()
        if self.association is not None:
            payload["bindings"] = self.association.to_dict()
        return payload


def _resolve_location(
    provider: CapacityProvider,
    settings: Settings,
    instances: List[ComputeInstance],
    deadline: Optional[RunDeadline],
) -> str:
    if settings.location:
        return settings.location
    try:
        location = call_with_deadline(
            deadline, "resolve location", provider.resource_group_location, settings.scope
        )
    except (ProviderError, StepTimeout) as e:
        located = sorted({i.location for i in instances if i.location})
        if not located:
            raise FatalPrecondition(f"Cannot determine location for {settings.scope.describe()}: {e}") from e
        logger.warning(f"Resource group lookup failed ({e}); using VM location '{located[0]}'")
        return located[0]
    return location


def reconcile(
    provider: CapacityProvider,
    settings: Settings,
    limiter: Optional[TokenBucket] = None,
    deadline: Optional[RunDeadline] = None,
) -> RunReport:
    scope = settings.scope
    mode = "dry-run" if settings.dry_run else "apply"
    report = RunReport(scope=scope, mode=mode)
    group_name = settings.effective_group_name

    if limiter is None:
        limiter = TokenBucket(settings.bind_rate_per_second, burst=settings.bind_burst)
    if deadline is None:
        deadline = RunDeadline(settings.run_timeout)

    logger.info(
        f"Starting capacity reservation run (mode={mode}, scope={scope.describe()}, group={group_name})"
    )
    logger.info(f"binding_transitions.json SHA-256: {transitions_hash()}")

    try:
        report.instances = collect_instances(provider, scope, deadline)
        report.demand = aggregate_demand(report.instances)
        if not report.instances:
            logger.warning(f"No VMs found in resource group '{scope.resource_group}'")
            return report

        report.location = _resolve_location(provider, settings, report.instances, deadline)
        zones = group_zones(report.instances)

        if settings.dry_run:
            report.plan = build_plan(group_name, report.location, report.instances, report.demand)
            return report

        if settings.skip_preflight:
            logger.warning("Preflight skipped by configuration")
        else:
            report.preflight = run_preflight(
                provider,
                scope,
                group_name,
                report.location,
                zones,
                report.demand.demands,
                settings.probe_size_class or None,
                capability_id=settings.capability_id,
                deadline=deadline,
                cleanup_timeout_sec=settings.lro_timeout_sec,
            )
            for issue in report.preflight.issues:
                logger.warning(
                    f"Preflight NotReady [{issue.category.value}] {issue.check}: {issue.message}"
                )
            if not report.preflight.ready:
                logger.warning("Continuing despite preflight findings; expect similar failures below")

        report.group = ensure_reservation_group(
            provider, scope, group_name, report.location, zones, deadline
        )
        report.provisioning = provision_reservations(
            provider, scope, report.group, report.demand.demands, limiter, deadline
        )
        report.association = associate_instances(
            provider,
            scope,
            report.instances,
            report.group,
            report.provisioning.reservation_map,
            limiter,
            deadline,
        )
    except FatalPrecondition as e:
        report.fatal_error = str(e)
        logger.error(f"Run aborted: {e}")
    return report


def finish(report: RunReport, settings: Settings) -> int:
    """Notify and compute the exit code for a completed run."""
    notify_webhook(settings.webhook_url, render_summary_text(report), dry_run=settings.dry_run)
    code = report.exit_code(settings.accept_partial)
    if report.failure_count and code == EXIT_OK:
        logger.warning(
            f"{report.failure_count} item(s) failed; accepted as partial success (use --strict to fail)"
        )
    return code
