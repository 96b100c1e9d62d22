from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Sequence

from odcr.models import (
    ComputeInstance,
    DemandSummary,
    Reservation,
    ReservationGroup,
    group_zones,
)
from odcr.provisioning import plan_reservation
from odcr.utils import dump_json

if TYPE_CHECKING:
    from odcr.engine import RunReport


@dataclass
class PlannedAssignment:
    instance: str
    size_class: str
    zone: str
    reservation: str


@dataclass
class Plan:
    group: ReservationGroup
    reservations: List[Reservation]
    assignments: List[PlannedAssignment]
    unclassified: List[str]


def build_plan(
    group_name: str,
    location: str,
    instances: Sequence[ComputeInstance],
    demand: DemandSummary,
) -> Plan:
    group = ReservationGroup(name=group_name, location=location, zones=group_zones(list(instances)))
    reservations = [plan_reservation(group, d) for d in demand.demands]
    by_key = {(r.size_class, r.zone): r.name for r in reservations}
    assignments = [
        PlannedAssignment(
            instance=inst.name,
            size_class=inst.size_class,
            zone=inst.zone,
            reservation=by_key[inst.demand_key],
        )
        for inst in sorted(instances, key=lambda i: i.name)
        if inst.is_classified
    ]
    return Plan(
        group=group,
        reservations=reservations,
        assignments=assignments,
        unclassified=list(demand.unclassified),
    )


def plan_to_dict(plan: Plan) -> Dict[str, object]:
    return {
        "group": {
            "name": plan.group.name,
            "location": plan.group.location,
            "zones": list(plan.group.zones),
        },
        "reservations": [
            {
                "name": r.name,
                "size": r.size_class,
                "zone": r.zone,
                "capacity": r.capacity,
            }
            for r in plan.reservations
        ],
        "assignments": [
            {"instance": a.instance, "size": a.size_class, "zone": a.zone, "reservation": a.reservation}
            for a in plan.assignments
        ],
        "unclassified": list(plan.unclassified),
    }


def render_plan_text(plan: Plan) -> str:
    zones = " ".join(plan.group.zones) if plan.group.zones else "none"
    lines = [
        f"Capacity Reservation Group: {plan.group.name} "
        f"(location: {plan.group.location}, zones: {zones})",
        "",
        "Planned reservations:",
        f"  {'VM Size':<24} {'Zone':<6} {'Capacity':<9} Name",
    ]
    for r in plan.reservations:
        lines.append(f"  {r.size_class:<24} {r.zone:<6} {r.capacity:<9} {r.name}")
    if not plan.reservations:
        lines.append("  (none)")

    lines += ["", "Planned associations:"]
    for a in plan.assignments:
        lines.append(f"  {a.instance} -> {a.reservation}")
    if not plan.assignments:
        lines.append("  (none)")

    if plan.unclassified:
        lines += ["", f"Unclassified (no availability zone, not reserved): {len(plan.unclassified)}"]
        lines += [f"  {name}" for name in plan.unclassified]
    return "\n".join(lines) + "\n"


def render_plan_json(plan: Plan) -> str:
    return dump_json(plan_to_dict(plan)) + "\n"


def follow_up_commands(resource_group: str, group_name: str) -> List[str]:
    return [
        f"az capacity reservation list -g {resource_group} --capacity-reservation-group {group_name}",
        f"az vm show -g {resource_group} -n <vm-name> --query 'capacityReservation'",
    ]


def render_summary_text(report: "RunReport") -> str:
    lines = [f"Reservation run summary ({report.mode}) for {report.scope.describe()}"]
    if report.fatal_error:
        lines.append(f"  FATAL: {report.fatal_error}")

    lines.append(
        f"  Instances: {report.instance_count} "
        f"(classified {report.demand.classified_count}, unclassified {len(report.demand.unclassified)})"
    )
    for d in report.demand.demands:
        lines.append(f"    demand {d.size_class} zone {d.zone}: {d.count}")

    if report.preflight is not None:
        lines.append(f"  Preflight: {report.preflight.status.value}")
        for issue in report.preflight.issues:
            lines.append(f"    [{issue.category.value}] {issue.check}: {issue.message}")

    if report.provisioning is not None:
        p = report.provisioning
        lines.append(
            f"  Reservations: created {len(p.created)}, existing {len(p.existing)}, "
            f"failed {len(p.failures)}"
        )
        for f in p.failures:
            lines.append(f"    [{f.category}] {f.item}: {f.reason}")

    if report.association is not None:
        a = report.association
        lines.append(f"  Bindings: bound {a.bound}, skipped {a.skipped}, failed {a.failed}")
        for o in a.failures:
            lines.append(f"    [{o.category}] {o.instance}: {o.reason}")

    if report.group is not None and report.mode == "apply" and not report.fatal_error:
        lines.append("")
        lines.append("You can view your capacity reservations and VM associations using:")
        lines += [f"  {cmd}" for cmd in follow_up_commands(report.scope.resource_group, report.group.name)]
    return "\n".join(lines) + "\n"
