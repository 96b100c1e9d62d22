from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

# (size_class, zone)
DemandKey = Tuple[str, str]


@dataclass(frozen=True)
class Scope:
    subscription_id: str
    resource_group: str

    def describe(self) -> str:
        return f"{self.subscription_id}/{self.resource_group}"


@dataclass
class ComputeInstance:
    name: str
    resource_id: str
    size_class: str
    zone: Optional[str]
    location: str
    owning_scope: str
    current_reservation_binding: Optional[str] = None

    @property
    def is_classified(self) -> bool:
        return bool(self.zone)

    @property
    def demand_key(self) -> Optional[DemandKey]:
        if not self.zone:
            return None
        return (self.size_class, self.zone)


@dataclass(frozen=True, order=True)
class ReservationDemand:
    size_class: str
    zone: str
    count: int

    @property
    def key(self) -> DemandKey:
        return (self.size_class, self.zone)


@dataclass
class ReservationGroup:
    name: str
    location: str
    zones: Tuple[str, ...] = ()
    id: Optional[str] = None

    def matches(self, binding: Optional[str]) -> bool:
        """True when a VM's capacity-reservation binding points at this group."""
        if not binding:
            return False
        if self.id:
            return binding.rstrip("/").lower() == self.id.rstrip("/").lower()
        # id unknown (group reported as already existing): compare names only
        return binding.rstrip("/").split("/")[-1].lower() == self.name.lower()


@dataclass(frozen=True)
class Reservation:
    group_name: str
    name: str
    size_class: str
    zone: Optional[str]
    capacity: int
    location: str


def reservation_name(group_name: str, size_class: str, zone: str) -> str:
    return f"{group_name}-{size_class}-z{zone}"


def group_zones(instances: List[ComputeInstance]) -> Tuple[str, ...]:
    return tuple(sorted({i.zone for i in instances if i.zone}))


@dataclass(frozen=True)
class SizeOffer:
    name: str
    vcpus: int


@dataclass(frozen=True)
class GroupResult:
    created: bool
    group_id: Optional[str] = None


@dataclass
class ItemFailure:
    item: str
    reason: str
    category: str

    def to_dict(self) -> Dict[str, str]:
        return {"item": self.item, "reason": self.reason, "category": self.category}


@dataclass
class DemandSummary:
    demands: List[ReservationDemand] = field(default_factory=list)
    unclassified: List[str] = field(default_factory=list)

    @property
    def classified_count(self) -> int:
        return sum(d.count for d in self.demands)
