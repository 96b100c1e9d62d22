"""Tests for odcr.demand and the naming helpers in odcr.models."""

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT / "tests"))

from fakes import make_vm, scenario_vms

from odcr.demand import aggregate_demand
from odcr.models import ReservationDemand, ReservationGroup, group_zones, reservation_name


class TestAggregateDemand:
    def test_scenario_buckets(self):
        summary = aggregate_demand(scenario_vms())
        assert summary.demands == [
            ReservationDemand("A", "1", 3),
            ReservationDemand("B", "2", 2),
        ]
        assert summary.unclassified == ["vm-nz"]

    def test_counts_add_up(self):
        vms = scenario_vms() + [make_vm("vm-c1", size="C", zone="3"), make_vm("vm-x", zone="")]
        summary = aggregate_demand(vms)
        assert summary.classified_count + len(summary.unclassified) == len(vms)

    def test_no_instance_in_two_buckets(self):
        vms = [make_vm("a", size="A", zone="1"), make_vm("b", size="A", zone="2")]
        summary = aggregate_demand(vms)
        assert [d.key for d in summary.demands] == [("A", "1"), ("A", "2")]
        assert all(d.count == 1 for d in summary.demands)

    def test_sorted_by_size_then_zone(self):
        vms = [
            make_vm("z", size="Standard_E4s_v5", zone="2"),
            make_vm("y", size="Standard_D2s_v5", zone="3"),
            make_vm("x", size="Standard_D2s_v5", zone="1"),
        ]
        keys = [d.key for d in aggregate_demand(vms).demands]
        assert keys == [
            ("Standard_D2s_v5", "1"),
            ("Standard_D2s_v5", "3"),
            ("Standard_E4s_v5", "2"),
        ]

    def test_same_result_regardless_of_input_order(self):
        vms = scenario_vms()
        assert aggregate_demand(vms) == aggregate_demand(list(reversed(vms)))

    def test_empty(self):
        summary = aggregate_demand([])
        assert summary.demands == []
        assert summary.unclassified == []

    def test_all_zoneless(self):
        summary = aggregate_demand([make_vm("a", zone=None), make_vm("b", zone=None)])
        assert summary.demands == []
        assert summary.unclassified == ["a", "b"]


class TestNaming:
    def test_reservation_name_format(self):
        assert reservation_name("rg-crg", "Standard_D2s_v5", "1") == "rg-crg-Standard_D2s_v5-z1"

    def test_reservation_name_is_pure(self):
        assert reservation_name("g", "A", "2") == reservation_name("g", "A", "2")
        assert reservation_name("g", "A", "2") != reservation_name("g", "A", "3")

    def test_group_zones_sorted_distinct(self):
        assert group_zones(scenario_vms()) == ("1", "2")

    def test_group_zones_none(self):
        assert group_zones([make_vm("a", zone=None)]) == ()


class TestGroupMatches:
    GROUP_ID = "/subscriptions/s/resourceGroups/rg/providers/Microsoft.Compute/capacityReservationGroups/rg-crg"

    @pytest.mark.parametrize(
        "binding",
        [
            GROUP_ID,
            GROUP_ID.upper(),
            "/subscriptions/s/resourceGroups/RG/providers/Microsoft.Compute/capacityReservationGroups/RG-CRG",
        ],
    )
    def test_matches(self, binding):
        group = ReservationGroup("rg-crg", "eastus", ("1",), id=self.GROUP_ID)
        assert group.matches(binding)

    @pytest.mark.parametrize(
        "binding",
        [None, "", "/subscriptions/s/resourceGroups/rg/providers/Microsoft.Compute/capacityReservationGroups/other"],
    )
    def test_does_not_match(self, binding):
        group = ReservationGroup("rg-crg", "eastus", ("1",), id=self.GROUP_ID)
        assert not group.matches(binding)

    def test_same_name_in_other_resource_group_does_not_match(self):
        group = ReservationGroup("rg-crg", "eastus", ("1",), id=self.GROUP_ID)
        other = self.GROUP_ID.replace("/resourceGroups/rg/", "/resourceGroups/rg-other/")
        assert not group.matches(other)

    def test_name_match_when_id_unknown(self):
        group = ReservationGroup("rg-crg", "eastus", ("1",))
        assert group.matches(self.GROUP_ID)
        assert not group.matches(self.GROUP_ID.replace("rg-crg", "other"))
