"""Preflight validation before any bulk mutation.

Checks, in order: the compute capability is registered (fatal when not),
the caller can list reservation groups in the scope, the location accepts
reservation groups, and finally a disposable probe reservation can be
created. The probe is always cleaned up when it exists, whether or not
its creation reported success.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Sequence

from odcr.errors import (
    CapabilityNotRegistered,
    ErrorCategory,
    ProviderError,
    StepTimeout,
    error_category,
)
from odcr.models import Reservation, ReservationDemand, Scope, SizeOffer
from odcr.pacing import RunDeadline, call_with_deadline
from odcr.provider import CapacityProvider

logger = logging.getLogger(__name__)

PROBE_SUFFIX = "preflight-probe"
# used when size discovery fails or returns nothing
FALLBACK_PROBE_SIZE = "Standard_D2s_v5"
DEFAULT_CLEANUP_TIMEOUT_SEC = 600.0


class Readiness(str, Enum):
    READY = "Ready"
    NOT_READY = "NotReady"


@dataclass
class PreflightIssue:
    check: str
    category: ErrorCategory
    message: str

    def to_dict(self) -> dict:
        return {"check": self.check, "category": self.category.value, "message": self.message}


@dataclass
class PreflightResult:
    issues: List[PreflightIssue] = field(default_factory=list)
    probe_name: Optional[str] = None
    probe_size_class: Optional[str] = None
    probe_created: bool = False
    probe_deleted: bool = False
    cleanup_error: Optional[str] = None

    @property
    def status(self) -> Readiness:
        return Readiness.NOT_READY if self.issues else Readiness.READY

    @property
    def ready(self) -> bool:
        return not self.issues

    @property
    def categories(self) -> List[ErrorCategory]:
        return [i.category for i in self.issues]

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "issues": [i.to_dict() for i in self.issues],
            "probe": self.probe_name,
            "probe_size": self.probe_size_class,
            "probe_created": self.probe_created,
            "probe_deleted": self.probe_deleted,
            "cleanup_error": self.cleanup_error,
        }


def probe_reservation_name(group_name: str) -> str:
    return f"{group_name}-{PROBE_SUFFIX}"


def _issue(result: PreflightResult, check: str, exc: Exception, default: ErrorCategory) -> None:
    category = error_category(exc)
    if category is ErrorCategory.UNKNOWN:
        category = default
    result.issues.append(PreflightIssue(check, category, str(exc)))
    logger.warning(f"Preflight {check} failed ({category.value}): {exc}")


def smallest_size(offers: Sequence[SizeOffer]) -> Optional[str]:
    """Fewest vCPUs wins; ties break on name so the choice is stable."""
    if not offers:
        return None
    return min(offers, key=lambda o: (o.vcpus, o.name)).name


def choose_probe_size(
    provider: CapacityProvider,
    location: str,
    zone: Optional[str],
    override: Optional[str] = None,
    deadline: Optional[RunDeadline] = None,
) -> str:
    if override:
        return override
    try:
        offers = call_with_deadline(
            deadline, "list reservable sizes", provider.list_reservable_sizes, location, zone
        )
    except (ProviderError, StepTimeout) as e:
        logger.warning(f"VM size discovery failed, probing with {FALLBACK_PROBE_SIZE}: {e}")
        return FALLBACK_PROBE_SIZE
    size = smallest_size(offers)
    if size is None:
        logger.warning(
            f"No reservable VM size reported for {location} zone {zone or 'none'}, "
            f"probing with {FALLBACK_PROBE_SIZE}"
        )
        return FALLBACK_PROBE_SIZE
    return size


def run_preflight(
    provider: CapacityProvider,
    scope: Scope,
    group_name: str,
    location: str,
    zones: Iterable[str],
    demands: Sequence[ReservationDemand],
    probe_size_class: Optional[str] = None,
    capability_id: str = "Microsoft.Compute",
    deadline: Optional[RunDeadline] = None,
    cleanup_timeout_sec: float = DEFAULT_CLEANUP_TIMEOUT_SEC,
) -> PreflightResult:
    """Readiness checks for one run.

    ``probe_size_class`` overrides size discovery. Probe cleanup runs under its
    own ``cleanup_timeout_sec`` budget so it still happens after the run
    deadline is spent.
    """
    result = PreflightResult()
    zones = tuple(zones)
    logger.info("Running preflight checks...")

    # (a) capability
    try:
        registered = call_with_deadline(
            deadline, "check capability", provider.check_capability, capability_id
        )
    except (ProviderError, StepTimeout) as e:
        _issue(result, "capability", e, ErrorCategory.PERMISSION)
    else:
        if not registered:
            raise CapabilityNotRegistered(
                f"Resource provider '{capability_id}' is not registered for this subscription"
            )

    # (b) permission to list groups in the scope
    try:
        call_with_deadline(deadline, "list reservation groups", provider.list_reservation_groups, scope)
    except (ProviderError, StepTimeout) as e:
        _issue(result, "permission", e, ErrorCategory.PERMISSION)

    # (c) location support
    try:
        accepted = call_with_deadline(
            deadline, "check location", provider.accepts_reservation_groups, location
        )
    except (ProviderError, StepTimeout) as e:
        _issue(result, "location", e, ErrorCategory.UNSUPPORTED)
    else:
        if not accepted:
            result.issues.append(
                PreflightIssue(
                    "location",
                    ErrorCategory.UNSUPPORTED,
                    f"Location '{location}' does not accept capacity reservation groups",
                )
            )
            logger.warning(f"Preflight location check failed: '{location}' not supported")

    probe_zone = sorted(demands)[0].zone if demands else None
    result.probe_size_class = choose_probe_size(
        provider, location, probe_zone, probe_size_class, deadline
    )
    probe = Reservation(
        group_name=group_name,
        name=probe_reservation_name(group_name),
        size_class=result.probe_size_class,
        zone=probe_zone,
        capacity=1,
        location=location,
    )
    _run_probe(provider, scope, probe, zones, result, deadline, cleanup_timeout_sec)

    if result.ready:
        logger.info("Preflight: Ready")
    else:
        reasons = ", ".join(sorted({c.value for c in result.categories}))
        logger.warning(f"Preflight: NotReady ({reasons})")
    return result


def _run_probe(
    provider: CapacityProvider,
    scope: Scope,
    probe: Reservation,
    zones: Sequence[str],
    result: PreflightResult,
    deadline: Optional[RunDeadline],
    cleanup_timeout_sec: float,
) -> None:
    result.probe_name = probe.name

    # The probe needs its container; an existing group is fine.
    try:
        call_with_deadline(
            deadline,
            "probe reservation group",
            provider.create_or_get_reservation_group,
            scope,
            probe.group_name,
            probe.location,
            zones,
        )
    except (ProviderError, StepTimeout) as e:
        if error_category(e) is not ErrorCategory.ALREADY_EXISTS:
            _issue(result, "probe", e, ErrorCategory.UNKNOWN)
            return

    logger.info(
        f"Creating probe reservation '{probe.name}' ({probe.size_class}, "
        f"zone {probe.zone or 'none'}, capacity 1)"
    )
    timed_out = False
    try:
        call_with_deadline(deadline, "create probe reservation", provider.create_reservation, scope, probe)
        result.probe_created = True
    except (ProviderError, StepTimeout) as e:
        timed_out = isinstance(e, StepTimeout)
        _issue(result, "probe", e, ErrorCategory.UNKNOWN)
    finally:
        _cleanup_probe(provider, scope, probe, result, RunDeadline(cleanup_timeout_sec), timed_out)


def _cleanup_probe(
    provider: CapacityProvider,
    scope: Scope,
    probe: Reservation,
    result: PreflightResult,
    deadline: RunDeadline,
    create_timed_out: bool,
) -> None:
    try:
        exists = result.probe_created or call_with_deadline(
            deadline,
            "check probe reservation",
            provider.reservation_exists,
            scope,
            probe.group_name,
            probe.name,
        )
        if not exists:
            if create_timed_out:
                # the abandoned create call may still finish on the provider side
                result.cleanup_error = (
                    f"Probe creation timed out; '{probe.name}' may still appear in group "
                    f"'{probe.group_name}' and must then be deleted manually"
                )
                logger.warning(result.cleanup_error)
            return
        call_with_deadline(
            deadline,
            "delete probe reservation",
            provider.delete_reservation,
            scope,
            probe.group_name,
            probe.name,
        )
        result.probe_deleted = True
        logger.info(f"Probe reservation '{probe.name}' deleted")
    except (ProviderError, StepTimeout) as e:
        result.cleanup_error = str(e)
        logger.error(f"Probe reservation '{probe.name}' cleanup failed, delete it manually: {e}")
