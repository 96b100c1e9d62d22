"""Reservation-group manager and reservation provisioner.

Both are create-or-skip: an existing group or an existing reservation with
the derived name counts as success. Existing reservations are never resized.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from odcr.errors import (
    ErrorCategory,
    GroupUnavailable,
    ProviderError,
    StepTimeout,
    error_category,
)
from odcr.models import (
    DemandKey,
    ItemFailure,
    Reservation,
    ReservationDemand,
    ReservationGroup,
    Scope,
    reservation_name,
)
from odcr.pacing import RunDeadline, TokenBucket, call_with_deadline
from odcr.provider import CapacityProvider

logger = logging.getLogger(__name__)


def ensure_reservation_group(
    provider: CapacityProvider,
    scope: Scope,
    name: str,
    location: str,
    zones: Iterable[str] = (),
    deadline: Optional[RunDeadline] = None,
) -> ReservationGroup:
    zones = tuple(zones)
    if zones:
        logger.info(
            f"Creating Capacity Reservation Group '{name}' in '{location}' with zones: {' '.join(zones)}"
        )
    else:
        logger.info(f"Creating Capacity Reservation Group '{name}' in '{location}' (no zones)")

    group = ReservationGroup(name=name, location=location, zones=zones)
    try:
        result = call_with_deadline(
            deadline,
            "create reservation group",
            provider.create_or_get_reservation_group,
            scope,
            name,
            location,
            zones,
        )
    except ProviderError as e:
        if e.category is ErrorCategory.ALREADY_EXISTS:
            logger.info(f"Capacity Reservation Group '{name}' already exists, reusing it")
            return group
        raise GroupUnavailable(f"Failed to create Capacity Reservation Group '{name}': {e}") from e
    except StepTimeout as e:
        raise GroupUnavailable(f"Failed to create Capacity Reservation Group '{name}': {e}") from e

    group.id = result.group_id
    if result.created:
        logger.info(f"Capacity Reservation Group '{name}' created successfully")
    else:
        logger.info(f"Capacity Reservation Group '{name}' already exists, reusing it")
    return group


@dataclass
class ProvisioningReport:
    reservation_map: Dict[DemandKey, str] = field(default_factory=dict)
    created: List[Reservation] = field(default_factory=list)
    existing: List[str] = field(default_factory=list)
    failures: List[ItemFailure] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "created": [r.name for r in self.created],
            "existing": list(self.existing),
            "failed": [f.to_dict() for f in self.failures],
        }


def plan_reservation(group: ReservationGroup, demand: ReservationDemand) -> Reservation:
    return Reservation(
        group_name=group.name,
        name=reservation_name(group.name, demand.size_class, demand.zone),
        size_class=demand.size_class,
        zone=demand.zone,
        capacity=demand.count,
        location=group.location,
    )


def provision_reservations(
    provider: CapacityProvider,
    scope: Scope,
    group: ReservationGroup,
    demands: Sequence[ReservationDemand],
    limiter: Optional[TokenBucket] = None,
    deadline: Optional[RunDeadline] = None,
) -> ProvisioningReport:
    """Ensure one reservation per demand bucket.

    A failed bucket is recorded and left out of ``reservation_map``; the
    remaining buckets are still processed.
    """
    report = ProvisioningReport()
    logger.info("Creating capacity reservations...")

    for demand in sorted(demands):
        reservation = plan_reservation(group, demand)
        try:
            exists = call_with_deadline(
                deadline,
                f"check reservation {reservation.name}",
                provider.reservation_exists,
                scope,
                group.name,
                reservation.name,
            )
            if exists:
                logger.info(
                    f"Reservation '{reservation.name}' already exists, keeping its current capacity"
                )
                report.existing.append(reservation.name)
                report.reservation_map[demand.key] = reservation.name
                continue

            logger.info(
                f"Creating reservation '{reservation.name}' for VM size '{demand.size_class}' "
                f"in zone '{demand.zone}' with {demand.count} instances..."
            )
            step = f"create reservation {reservation.name}"
            if deadline is not None and deadline.expired():
                raise StepTimeout(step, 0)
            if limiter is not None:
                limiter.acquire()
            call_with_deadline(
                deadline,
                step,
                provider.create_reservation,
                scope,
                reservation,
            )
        except (ProviderError, StepTimeout) as e:
            category = error_category(e)
            logger.error(f"Failed to create reservation '{reservation.name}' ({category.value}): {e}")
            report.failures.append(ItemFailure(reservation.name, str(e), category.value))
            continue

        logger.info(
            f"Created reservation '{reservation.name}' "
            f"(Size: {demand.size_class}, Zone: {demand.zone}, Capacity: {demand.count})"
        )
        report.created.append(reservation)
        report.reservation_map[demand.key] = reservation.name

    logger.info(
        f"Reservations: {len(report.created)} created, {len(report.existing)} existing, "
        f"{len(report.failures)} failed"
    )
    return report
