from __future__ import annotations

import logging
from collections import Counter
from typing import Sequence

from odcr.models import ComputeInstance, DemandSummary, ReservationDemand

logger = logging.getLogger(__name__)


def aggregate_demand(instances: Sequence[ComputeInstance]) -> DemandSummary:
    """Group instances into (size_class, zone) buckets, sorted by size then zone.

    Instances without a zone go to ``unclassified`` and into no bucket:
    reservations here are always zone-scoped.
    """
    counts: Counter = Counter()
    unclassified = []
    for inst in instances:
        key = inst.demand_key
        if key is None:
            logger.warning(
                f"VM {inst.name} is not in an availability zone, skipping capacity reservation"
            )
            unclassified.append(inst.name)
            continue
        counts[key] += 1

    demands = [
        ReservationDemand(size_class=size, zone=zone, count=count)
        for (size, zone), count in sorted(counts.items())
    ]
    summary = DemandSummary(demands=demands, unclassified=sorted(unclassified))
    logger.info(
        f"Demand: {len(demands)} bucket(s) covering {summary.classified_count} VM(s), "
        f"{len(unclassified)} unclassified"
    )
    return summary
