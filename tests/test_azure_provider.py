"""Tests for odcr/azure_provider.py with mocked management clients."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
)

from odcr.azure_provider import AzureCapacityProvider, group_resource_id
from odcr.errors import ErrorCategory, ProviderError
from odcr.models import Reservation, ReservationGroup, Scope

SCOPE = Scope("sub-1", "rg-app")
GROUP_ID = group_resource_id(SCOPE, "rg-app-crg")


def _vm(name, size="Standard_D2s_v5", zones=("1",), group_id=None):
    profile = None
    if group_id is not None:
        profile = SimpleNamespace(capacity_reservation_group=SimpleNamespace(id=group_id))
    return SimpleNamespace(
        name=name,
        id=f"/subscriptions/sub-1/resourceGroups/rg-app/providers/Microsoft.Compute/virtualMachines/{name}",
        location="eastus",
        zones=list(zones) if zones else None,
        hardware_profile=SimpleNamespace(vm_size=size),
        capacity_reservation=profile,
    )


def _poller(result=None, done=True):
    poller = MagicMock()
    poller.result.return_value = result
    poller.done.return_value = done
    return poller


@pytest.fixture
def compute():
    return MagicMock()


@pytest.fixture
def resources():
    return MagicMock()


@pytest.fixture
def provider(compute, resources):
    return AzureCapacityProvider(
        "sub-1", credential=object(), compute_client=compute, resource_client=resources, lro_timeout_sec=30
    )


class TestInventory:
    def test_translates_vms(self, provider, compute):
        compute.virtual_machines.list.return_value = [
            _vm("vm-1"),
            _vm("vm-2", size="Standard_E4s_v5", zones=None, group_id=GROUP_ID),
        ]

        instances = provider.list_compute_instances(SCOPE)

        compute.virtual_machines.list.assert_called_once_with("rg-app")
        first, second = instances
        assert first.name == "vm-1"
        assert first.size_class == "Standard_D2s_v5"
        assert first.zone == "1"
        assert first.current_reservation_binding is None
        assert first.owning_scope == "rg-app"
        assert second.zone is None
        assert second.size_class == "Standard_E4s_v5"
        assert second.current_reservation_binding == GROUP_ID

    def test_enum_size_unwrapped(self, provider, compute):
        vm = _vm("vm-1")
        vm.hardware_profile.vm_size = SimpleNamespace(value="Standard_D4s_v5")
        compute.virtual_machines.list.return_value = [vm]
        assert provider.list_compute_instances(SCOPE)[0].size_class == "Standard_D4s_v5"

    def test_list_error_becomes_provider_error(self, provider, compute):
        compute.virtual_machines.list.side_effect = HttpResponseError(message="Forbidden")
        with pytest.raises(ProviderError, match="list VMs in 'rg-app'"):
            provider.list_compute_instances(SCOPE)

    def test_bindings_filtered_by_name(self, provider, compute):
        compute.virtual_machines.list.return_value = [_vm("vm-1", group_id=GROUP_ID), _vm("vm-2")]
        assert provider.get_instance_bindings(SCOPE, ["vm-1"]) == {"vm-1": GROUP_ID}

    def test_single_binding(self, provider, compute):
        compute.virtual_machines.list.return_value = [_vm("vm-1", group_id=GROUP_ID)]
        assert provider.get_instance_binding(SCOPE, "vm-1") == GROUP_ID
        assert provider.get_instance_binding(SCOPE, "vm-9") is None

    def test_resource_group_location(self, provider, resources):
        resources.resource_groups.get.return_value = SimpleNamespace(location="westeurope")
        assert provider.resource_group_location(SCOPE) == "westeurope"


class TestReservationGroups:
    def test_existing_group(self, provider, compute):
        compute.capacity_reservation_groups.get.return_value = SimpleNamespace(id=GROUP_ID)

        result = provider.create_or_get_reservation_group(SCOPE, "rg-app-crg", "eastus", ["1", "2"])

        assert not result.created
        assert result.group_id == GROUP_ID
        compute.capacity_reservation_groups.create_or_update.assert_not_called()

    def test_creates_missing_group_with_zones(self, provider, compute):
        groups = compute.capacity_reservation_groups
        groups.get.side_effect = ResourceNotFoundError("not found")
        groups.create_or_update.return_value = SimpleNamespace(id=GROUP_ID)

        result = provider.create_or_get_reservation_group(SCOPE, "rg-app-crg", "eastus", ["1", "2"])

        assert result.created
        assert result.group_id == GROUP_ID
        rg, name, params = groups.create_or_update.call_args[0]
        assert (rg, name) == ("rg-app", "rg-app-crg")
        assert params.location == "eastus"
        assert params.zones == ["1", "2"]

    def test_regional_group_has_no_zones(self, provider, compute):
        groups = compute.capacity_reservation_groups
        groups.get.side_effect = ResourceNotFoundError("not found")
        groups.create_or_update.return_value = SimpleNamespace(id=GROUP_ID)
        provider.create_or_get_reservation_group(SCOPE, "rg-app-crg", "eastus", [])
        assert groups.create_or_update.call_args[0][2].zones is None

    def test_create_race_treated_as_existing(self, provider, compute):
        groups = compute.capacity_reservation_groups
        groups.get.side_effect = ResourceNotFoundError("not found")
        groups.create_or_update.side_effect = ResourceExistsError("already exists")

        result = provider.create_or_get_reservation_group(SCOPE, "rg-app-crg", "eastus", ["1"])

        assert not result.created
        assert result.group_id == GROUP_ID

    def test_create_failure_categorized(self, provider, compute):
        groups = compute.capacity_reservation_groups
        groups.get.side_effect = ResourceNotFoundError("not found")
        error = HttpResponseError(message="The client does not have authorization")
        error.error = SimpleNamespace(code="AuthorizationFailed")
        groups.create_or_update.side_effect = error

        with pytest.raises(ProviderError) as exc:
            provider.create_or_get_reservation_group(SCOPE, "rg-app-crg", "eastus", ["1"])

        assert exc.value.code == "AuthorizationFailed"
        assert exc.value.category is ErrorCategory.PERMISSION

    def test_list_groups(self, provider, compute):
        compute.capacity_reservation_groups.list_by_resource_group.return_value = [
            SimpleNamespace(name="a-crg"),
            SimpleNamespace(name="b-crg"),
        ]
        assert provider.list_reservation_groups(SCOPE) == ["a-crg", "b-crg"]


class TestReservations:
    RESERVATION = Reservation("rg-app-crg", "rg-app-crg-A-z1", "Standard_D2s_v5", "1", 3, "eastus")

    def test_exists(self, provider, compute):
        assert provider.reservation_exists(SCOPE, "rg-app-crg", "r1")
        compute.capacity_reservations.get.assert_called_once_with("rg-app", "rg-app-crg", "r1")

    def test_not_exists(self, provider, compute):
        compute.capacity_reservations.get.side_effect = ResourceNotFoundError("not found")
        assert not provider.reservation_exists(SCOPE, "rg-app-crg", "r1")

    def test_create_parameters(self, provider, compute):
        poller = _poller()
        compute.capacity_reservations.begin_create_or_update.return_value = poller

        provider.create_reservation(SCOPE, self.RESERVATION)

        rg, group, name, params = compute.capacity_reservations.begin_create_or_update.call_args[0]
        assert (rg, group, name) == ("rg-app", "rg-app-crg", "rg-app-crg-A-z1")
        assert params.sku.name == "Standard_D2s_v5"
        assert params.sku.capacity == 3
        assert params.zones == ["1"]
        assert params.location == "eastus"
        poller.result.assert_called_once_with(timeout=30)

    def test_create_quota_error(self, provider, compute):
        error = HttpResponseError(message="Operation results in exceeding approved quota")
        error.error = SimpleNamespace(code="QuotaExceeded")
        compute.capacity_reservations.begin_create_or_update.side_effect = error

        with pytest.raises(ProviderError) as exc:
            provider.create_reservation(SCOPE, self.RESERVATION)
        assert exc.value.category is ErrorCategory.QUOTA

    def test_unfinished_operation_times_out(self, provider, compute):
        compute.capacity_reservations.begin_create_or_update.return_value = _poller(done=False)
        with pytest.raises(ProviderError) as exc:
            provider.create_reservation(SCOPE, self.RESERVATION)
        assert exc.value.category is ErrorCategory.TIMEOUT

    def test_delete(self, provider, compute):
        poller = _poller()
        compute.capacity_reservations.begin_delete.return_value = poller
        provider.delete_reservation(SCOPE, "rg-app-crg", "probe")
        compute.capacity_reservations.begin_delete.assert_called_once_with("rg-app", "rg-app-crg", "probe")
        poller.result.assert_called_once()

    def test_transport_error(self, provider, compute):
        compute.capacity_reservations.begin_delete.side_effect = AzureError("connection reset")
        with pytest.raises(ProviderError, match="connection reset"):
            provider.delete_reservation(SCOPE, "rg-app-crg", "probe")


class TestBinding:
    def test_bind_uses_group_id(self, provider, compute):
        compute.virtual_machines.begin_update.return_value = _poller()
        group = ReservationGroup("rg-app-crg", "eastus", ("1",), id="/custom/id")

        provider.bind_instance_to_group(SCOPE, "vm-1", group)

        rg, name, params = compute.virtual_machines.begin_update.call_args[0]
        assert (rg, name) == ("rg-app", "vm-1")
        assert params.capacity_reservation.capacity_reservation_group.id == "/custom/id"

    def test_bind_builds_id_when_unknown(self, provider, compute):
        compute.virtual_machines.begin_update.return_value = _poller()
        provider.bind_instance_to_group(SCOPE, "vm-1", ReservationGroup("rg-app-crg", "eastus"))
        params = compute.virtual_machines.begin_update.call_args[0][2]
        assert params.capacity_reservation.capacity_reservation_group.id == GROUP_ID


class TestCapabilities:
    def test_registered(self, provider, resources):
        resources.providers.get.return_value = SimpleNamespace(registration_state="Registered")
        assert provider.check_capability("Microsoft.Compute")
        resources.providers.get.assert_called_once_with("Microsoft.Compute")

    def test_not_registered(self, provider, resources):
        resources.providers.get.return_value = SimpleNamespace(registration_state="NotRegistered")
        assert not provider.check_capability("Microsoft.Compute")

    def test_unknown_namespace(self, provider, resources):
        resources.providers.get.side_effect = ResourceNotFoundError("not found")
        assert not provider.check_capability("Microsoft.Nope")

    def _namespace(self, locations):
        return SimpleNamespace(
            resource_types=[
                SimpleNamespace(resource_type="virtualMachines", locations=["Nowhere"]),
                SimpleNamespace(resource_type="capacityReservationGroups", locations=locations),
            ]
        )

    def test_location_accepted_normalized(self, provider, resources):
        resources.providers.get.return_value = self._namespace(["East US", "West Europe"])
        assert provider.accepts_reservation_groups("eastus")
        assert provider.accepts_reservation_groups("West Europe")

    def test_location_rejected(self, provider, resources):
        resources.providers.get.return_value = self._namespace(["East US"])
        assert not provider.accepts_reservation_groups("nowhere")


def _sku(name, vcpus, zones=("1", "2", "3"), reservable=True, restrictions=(), resource_type="virtualMachines"):
    return SimpleNamespace(
        name=name,
        resource_type=resource_type,
        location_info=[SimpleNamespace(location="eastus", zones=list(zones))],
        capabilities=[
            SimpleNamespace(name="vCPUs", value=str(vcpus)),
            SimpleNamespace(name="CapacityReservationSupported", value=str(reservable)),
        ],
        restrictions=list(restrictions),
    )


def _zone_restriction(*zones):
    return SimpleNamespace(type="Zone", restriction_info=SimpleNamespace(zones=list(zones)))


class TestReservableSizes:
    def test_filters_and_translates(self, provider, compute):
        compute.resource_skus.list.return_value = [
            _sku("Standard_D2s_v5", 2),
            _sku("Standard_B1s", 1, reservable=False),
            _sku("Standard_A1_v2", 1, zones=("2",)),
            _sku("Standard_D2as_v5", 2, restrictions=[_zone_restriction("1")]),
            _sku(
                "Standard_E2s_v5",
                2,
                restrictions=[SimpleNamespace(type="Location", restriction_info=None)],
            ),
            _sku("Standard_D4s_v5", 4),
            _sku("Premium_LRS", 0, resource_type="disks"),
        ]

        sizes = provider.list_reservable_sizes("East US", "1")

        compute.resource_skus.list.assert_called_once_with(filter="location eq 'eastus'")
        assert [(s.name, s.vcpus) for s in sizes] == [("Standard_D2s_v5", 2), ("Standard_D4s_v5", 4)]

    def test_regional_ignores_zone_restrictions(self, provider, compute):
        compute.resource_skus.list.return_value = [
            _sku("Standard_D2as_v5", 2, restrictions=[_zone_restriction("1")]),
        ]
        assert [s.name for s in provider.list_reservable_sizes("eastus")] == ["Standard_D2as_v5"]

    def test_error_becomes_provider_error(self, provider, compute):
        compute.resource_skus.list.side_effect = HttpResponseError(message="Forbidden")
        with pytest.raises(ProviderError, match="list VM sizes"):
            provider.list_reservable_sizes("eastus", "1")
