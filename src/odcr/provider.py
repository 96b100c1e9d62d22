"""Collaborator interface the reconciliation engine drives.

Every method either returns typed records from odcr.models or raises
ProviderError with the provider's own error text. Instances are addressed by
name within the scope's resource group.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Sequence

from odcr.models import (
    ComputeInstance,
    GroupResult,
    Reservation,
    ReservationGroup,
    Scope,
    SizeOffer,
)


class CapacityProvider(ABC):
    @abstractmethod
    def resource_group_location(self, scope: Scope) -> str:
        """Location of the scope's resource group."""

    @abstractmethod
    def list_compute_instances(self, scope: Scope) -> List[ComputeInstance]:
        ...

    @abstractmethod
    def get_instance_bindings(
        self, scope: Scope, instance_names: Sequence[str]
    ) -> Dict[str, Optional[str]]:
        """Current reservation-group reference per instance, in one batched call."""

    def get_instance_binding(self, scope: Scope, instance_name: str) -> Optional[str]:
        return self.get_instance_bindings(scope, [instance_name]).get(instance_name)

    @abstractmethod
    def create_or_get_reservation_group(
        self, scope: Scope, name: str, location: str, zones: Iterable[str]
    ) -> GroupResult:
        ...

    @abstractmethod
    def list_reservation_groups(self, scope: Scope) -> List[str]:
        ...

    @abstractmethod
    def reservation_exists(self, scope: Scope, group_name: str, name: str) -> bool:
        ...

    @abstractmethod
    def create_reservation(self, scope: Scope, reservation: Reservation) -> None:
        ...

    @abstractmethod
    def delete_reservation(self, scope: Scope, group_name: str, name: str) -> None:
        ...

    @abstractmethod
    def bind_instance_to_group(
        self, scope: Scope, instance_name: str, group: ReservationGroup
    ) -> None:
        ...

    @abstractmethod
    def check_capability(self, capability_id: str) -> bool:
        """True when the capability (resource provider namespace) is registered."""

    @abstractmethod
    def accepts_reservation_groups(self, location: str) -> bool:
        ...

    @abstractmethod
    def list_reservable_sizes(self, location: str, zone: Optional[str] = None) -> List[SizeOffer]:
        """Sizes that accept capacity reservations and are not restricted in the zone."""
