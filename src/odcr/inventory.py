from __future__ import annotations

import logging
from typing import List, Optional

from odcr.errors import CollectionError, ProviderError, StepTimeout
from odcr.models import ComputeInstance, Scope
from odcr.pacing import RunDeadline, call_with_deadline
from odcr.provider import CapacityProvider

logger = logging.getLogger(__name__)


def _validate(instances: object) -> List[ComputeInstance]:
    if not isinstance(instances, list):
        raise CollectionError(f"Inventory query returned {type(instances).__name__}, expected a list")
    seen = set()
    for idx, inst in enumerate(instances):
        if not isinstance(inst, ComputeInstance):
            raise CollectionError(f"Inventory record #{idx} is not a compute instance: {inst!r}")
        if not inst.name:
            raise CollectionError(f"Inventory record #{idx} has no name")
        if not inst.size_class:
            raise CollectionError(f"Instance '{inst.name}' has no size class")
        if inst.name in seen:
            raise CollectionError(f"Instance '{inst.name}' listed twice")
        seen.add(inst.name)
    return instances


def collect_instances(
    provider: CapacityProvider,
    scope: Scope,
    deadline: Optional[RunDeadline] = None,
) -> List[ComputeInstance]:
    """Authoritative inventory for the scope. Any failure here is fatal."""
    logger.info(f"Querying VMs in resource group '{scope.resource_group}'...")
    try:
        instances = call_with_deadline(
            deadline, "list compute instances", provider.list_compute_instances, scope
        )
    except (ProviderError, StepTimeout) as e:
        raise CollectionError(f"Cannot list instances in {scope.describe()}: {e}") from e

    instances = _validate(instances)
    for inst in instances:
        logger.info(
            f"Found VM: {inst.name} (Size: {inst.size_class}, "
            f"Zone: {inst.zone or 'no-zone'}, Location: {inst.location})"
        )
    logger.info(f"Found {len(instances)} VM(s) in '{scope.resource_group}'")
    return instances
