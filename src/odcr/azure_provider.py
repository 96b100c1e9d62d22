"""CapacityProvider backed by the Azure management SDK.

Translation between SDK models and odcr.models happens here and nowhere
else. Every AzureError leaves this module as ProviderError.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
)
from azure.identity import DefaultAzureCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.compute.models import (
    CapacityReservation,
    CapacityReservationGroup,
    CapacityReservationProfile,
    Sku,
    SubResource,
    VirtualMachineUpdate,
)
from azure.mgmt.resource import ResourceManagementClient

from odcr.errors import ProviderError
from odcr.models import (
    ComputeInstance,
    GroupResult,
    Reservation,
    ReservationGroup,
    Scope,
    SizeOffer,
)
from odcr.provider import CapacityProvider

logger = logging.getLogger(__name__)

COMPUTE_NAMESPACE = "Microsoft.Compute"
GROUP_RESOURCE_TYPE = "capacityReservationGroups"
RESERVATION_CAPABILITY = "CapacityReservationSupported"


def group_resource_id(scope: Scope, group_name: str) -> str:
    return (
        f"/subscriptions/{scope.subscription_id}/resourceGroups/{scope.resource_group}"
        f"/providers/{COMPUTE_NAMESPACE}/{GROUP_RESOURCE_TYPE}/{group_name}"
    )


def _normalize_location(location: str) -> str:
    return location.replace(" ", "").lower()


def _enum_text(value: Any) -> str:
    if value is None:
        return ""
    return str(getattr(value, "value", value))


@contextmanager
def _azure_errors(action: str) -> Iterator[None]:
    try:
        yield
    except HttpResponseError as e:
        code = getattr(getattr(e, "error", None), "code", None)
        raise ProviderError(f"{action}: {e.message}", code=code) from e
    except AzureError as e:
        raise ProviderError(f"{action}: {e}") from e


class AzureCapacityProvider(CapacityProvider):
    def __init__(
        self,
        subscription_id: str,
        credential: Any = None,
        compute_client: Any = None,
        resource_client: Any = None,
        lro_timeout_sec: float = 600.0,
    ):
        self.subscription_id = subscription_id
        self.lro_timeout_sec = lro_timeout_sec
        self._credential = credential
        self._compute_client = compute_client
        self._resource_client = resource_client

    def _get_credential(self):
        if self._credential is None:
            self._credential = DefaultAzureCredential()
        return self._credential

    @property
    def compute(self):
        if self._compute_client is None:
            self._compute_client = ComputeManagementClient(
                self._get_credential(), self.subscription_id
            )
        return self._compute_client

    @property
    def resources(self):
        if self._resource_client is None:
            self._resource_client = ResourceManagementClient(
                self._get_credential(), self.subscription_id
            )
        return self._resource_client

    def _wait(self, poller: Any, action: str) -> Any:
        result = poller.result(timeout=self.lro_timeout_sec)
        if not poller.done():
            raise ProviderError(
                f"{action}: operation still running after {self.lro_timeout_sec:.0f}s (timed out)"
            )
        return result

    # ── Inventory ──

    def resource_group_location(self, scope: Scope) -> str:
        with _azure_errors(f"show resource group '{scope.resource_group}'"):
            return self.resources.resource_groups.get(scope.resource_group).location

    def _to_instance(self, vm: Any, scope: Scope) -> ComputeInstance:
        hardware = getattr(vm, "hardware_profile", None)
        zones = getattr(vm, "zones", None) or []
        binding = None
        profile = getattr(vm, "capacity_reservation", None)
        if profile is not None and profile.capacity_reservation_group is not None:
            binding = profile.capacity_reservation_group.id
        return ComputeInstance(
            name=vm.name or "",
            resource_id=vm.id or "",
            size_class=_enum_text(getattr(hardware, "vm_size", None)),
            zone=str(zones[0]) if zones else None,
            location=vm.location or "",
            owning_scope=scope.resource_group,
            current_reservation_binding=binding,
        )

    def list_compute_instances(self, scope: Scope) -> List[ComputeInstance]:
        with _azure_errors(f"list VMs in '{scope.resource_group}'"):
            vms = list(self.compute.virtual_machines.list(scope.resource_group))
        return [self._to_instance(vm, scope) for vm in vms]

    def get_instance_bindings(
        self, scope: Scope, instance_names: Sequence[str]
    ) -> Dict[str, Optional[str]]:
        wanted = set(instance_names)
        bindings: Dict[str, Optional[str]] = {}
        for inst in self.list_compute_instances(scope):
            if inst.name in wanted:
                bindings[inst.name] = inst.current_reservation_binding
        return bindings

    # ── Reservation groups ──

    def create_or_get_reservation_group(
        self, scope: Scope, name: str, location: str, zones: Iterable[str]
    ) -> GroupResult:
        groups = self.compute.capacity_reservation_groups
        with _azure_errors(f"show capacity reservation group '{name}'"):
            try:
                existing = groups.get(scope.resource_group, name)
                return GroupResult(created=False, group_id=existing.id)
            except ResourceNotFoundError:
                pass

        zone_list = list(zones)
        parameters = CapacityReservationGroup(location=location, zones=zone_list or None)
        with _azure_errors(f"create capacity reservation group '{name}'"):
            try:
                created = groups.create_or_update(scope.resource_group, name, parameters)
            except ResourceExistsError:
                return GroupResult(created=False, group_id=group_resource_id(scope, name))
        return GroupResult(created=True, group_id=created.id)

    def list_reservation_groups(self, scope: Scope) -> List[str]:
        with _azure_errors(f"list capacity reservation groups in '{scope.resource_group}'"):
            return [
                g.name
                for g in self.compute.capacity_reservation_groups.list_by_resource_group(
                    scope.resource_group
                )
            ]

    # ── Reservations ──

    def reservation_exists(self, scope: Scope, group_name: str, name: str) -> bool:
        with _azure_errors(f"show capacity reservation '{name}'"):
            try:
                self.compute.capacity_reservations.get(scope.resource_group, group_name, name)
            except ResourceNotFoundError:
                return False
        return True

    def create_reservation(self, scope: Scope, reservation: Reservation) -> None:
        parameters = CapacityReservation(
            location=reservation.location,
            sku=Sku(name=reservation.size_class, capacity=reservation.capacity),
            zones=[reservation.zone] if reservation.zone else None,
        )
        action = f"create capacity reservation '{reservation.name}'"
        with _azure_errors(action):
            poller = self.compute.capacity_reservations.begin_create_or_update(
                scope.resource_group, reservation.group_name, reservation.name, parameters
            )
            self._wait(poller, action)

    def delete_reservation(self, scope: Scope, group_name: str, name: str) -> None:
        action = f"delete capacity reservation '{name}'"
        with _azure_errors(action):
            poller = self.compute.capacity_reservations.begin_delete(
                scope.resource_group, group_name, name
            )
            self._wait(poller, action)

    # ── Bindings ──

    def bind_instance_to_group(
        self, scope: Scope, instance_name: str, group: ReservationGroup
    ) -> None:
        group_id = group.id or group_resource_id(scope, group.name)
        parameters = VirtualMachineUpdate(
            capacity_reservation=CapacityReservationProfile(
                capacity_reservation_group=SubResource(id=group_id)
            )
        )
        action = f"associate VM '{instance_name}' with '{group.name}'"
        with _azure_errors(action):
            poller = self.compute.virtual_machines.begin_update(
                scope.resource_group, instance_name, parameters
            )
            self._wait(poller, action)

    # ── Capability checks ──

    def _compute_namespace(self) -> Any:
        return self.resources.providers.get(COMPUTE_NAMESPACE)

    def check_capability(self, capability_id: str) -> bool:
        with _azure_errors(f"show resource provider '{capability_id}'"):
            try:
                provider = self.resources.providers.get(capability_id)
            except ResourceNotFoundError:
                return False
        state = _enum_text(getattr(provider, "registration_state", None))
        logger.debug(f"Resource provider {capability_id}: {state or 'unknown'}")
        return state.lower() == "registered"

    def accepts_reservation_groups(self, location: str) -> bool:
        with _azure_errors(f"show resource provider '{COMPUTE_NAMESPACE}'"):
            provider = self._compute_namespace()
        target = _normalize_location(location)
        for resource_type in provider.resource_types or []:
            if (resource_type.resource_type or "").lower() != GROUP_RESOURCE_TYPE.lower():
                continue
            return target in {_normalize_location(loc) for loc in resource_type.locations or []}
        return False

    def list_reservable_sizes(self, location: str, zone: Optional[str] = None) -> List[SizeOffer]:
        target = _normalize_location(location)
        with _azure_errors(f"list VM sizes in '{location}'"):
            skus = list(self.compute.resource_skus.list(filter=f"location eq '{target}'"))

        offers: List[SizeOffer] = []
        for sku in skus:
            if (sku.resource_type or "").lower() != "virtualmachines":
                continue
            capabilities = {c.name: c.value for c in sku.capabilities or []}
            if str(capabilities.get(RESERVATION_CAPABILITY, "")).lower() != "true":
                continue
            if zone and not _offered_in_zone(sku, target, zone):
                continue
            if _restricted(sku, zone):
                continue
            try:
                vcpus = int(capabilities.get("vCPUs", ""))
            except (TypeError, ValueError):
                continue
            offers.append(SizeOffer(name=sku.name, vcpus=vcpus))
        logger.debug(f"{len(offers)} reservable VM size(s) in {location} zone {zone or 'none'}")
        return offers


def _offered_in_zone(sku: Any, location: str, zone: str) -> bool:
    for info in sku.location_info or []:
        if _normalize_location(info.location or "") == location and zone in (info.zones or []):
            return True
    return False


def _restricted(sku: Any, zone: Optional[str]) -> bool:
    for restriction in sku.restrictions or []:
        kind = _enum_text(restriction.type).lower()
        if kind == "location":
            return True
        info = getattr(restriction, "restriction_info", None)
        if kind == "zone" and zone and zone in (getattr(info, "zones", None) or []):
            return True
    return False
