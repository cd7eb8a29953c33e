from datetime import timedelta

import pytest

from node_repository.config import ProvisioningConfig
from node_repository.errors import ActivationConflictError
from node_repository.errors import InvalidSpecificationError
from node_repository.errors import OutOfCapacityError
from node_repository.errors import ProvisionTimeoutError
from node_repository.interface import Agent
from node_repository.interface import Capacity
from node_repository.interface import ClusterResources
from node_repository.interface import ClusterType
from node_repository.interface import Environment
from node_repository.interface import EventType
from node_repository.interface import NodeResources
from node_repository.interface import NodeState
from node_repository.interface import StorageType
from node_repository.maintenance.maintainer import JobControl
from node_repository.maintenance.reservation_expirer import ReservationExpirer
from node_repository.node_filter import NodeFilter
from node_repository.provisioning.allocation import NOT_ENOUGH_NODES
from node_repository.provisioning.allocation import REJECTED_EXCLUSIVITY
from node_repository.provisioning.allocation import REJECTED_PARENT_HOST
from node_repository.provisioning.timeout_budget import TimeoutBudget
from tests.util import MEDIUM
from tests.util import ProvisioningTester
from tests.util import SMALL
from tests.util import capacity
from tests.util import container_cluster
from tests.util import content_cluster
from tests.util import indices
from tests.util import retired_indices


def hostnames(hosts):
    return sorted(host.hostname for host in hosts)


class TestBasicLifecycle:
    def test_prepare_reserves_and_activate_activates(self, tester):
        tester.make_ready_nodes(4)
        application = tester.make_application_id()

        hosts = tester.prepare(application, container_cluster(), capacity(2))
        assert indices(hosts) == [0, 1]
        assert len(tester.nodes(application, NodeState.reserved)) == 2

        tester.activate(application, hosts)
        active = tester.nodes(application, NodeState.active)
        assert active.hostnames() == {host.hostname for host in hosts}
        for node in active:
            assert node.allocation.requested_resources == SMALL
            assert node.history.event(EventType.activated) is not None

    def test_prepare_is_idempotent(self, tester):
        tester.make_ready_nodes(4)
        application = tester.make_application_id()

        first = tester.prepare(application, content_cluster(), capacity(2))
        second = tester.prepare(application, content_cluster(), capacity(2))
        assert first == second
        assert len(tester.nodes(application)) == 2

    def test_redeploy_keeps_nodes(self, tester):
        tester.make_ready_nodes(4)
        application = tester.make_application_id()

        first = tester.prepare_and_activate(application, content_cluster(), capacity(2))
        second = tester.prepare_and_activate(application, content_cluster(), capacity(2))
        assert hostnames(first) == hostnames(second)
        assert len(tester.node_repository.list(NodeState.ready)) == 2

    def test_grow_assigns_new_indices(self, tester):
        tester.make_ready_nodes(4)
        application = tester.make_application_id()

        tester.prepare_and_activate(application, container_cluster(), capacity(2))
        hosts = tester.prepare_and_activate(application, container_cluster(), capacity(4))
        assert indices(hosts) == [0, 1, 2, 3]
        assert retired_indices(hosts) == []

    def test_shrinking_container_cluster_deactivates_surplus(self, tester):
        tester.make_ready_nodes(4)
        application = tester.make_application_id()

        tester.prepare_and_activate(application, container_cluster(), capacity(4))
        hosts = tester.prepare_and_activate(application, container_cluster(), capacity(2))
        assert indices(hosts) == [0, 1]
        assert len(tester.nodes(application, NodeState.active)) == 2
        inactive = tester.nodes(application, NodeState.inactive)
        assert len(inactive) == 2
        assert not inactive.retired()

    def test_shrinking_content_cluster_retires_highest_indices(self, tester):
        tester.make_ready_nodes(4)
        application = tester.make_application_id()

        tester.prepare_and_activate(application, content_cluster(), capacity(4))
        hosts = tester.prepare_and_activate(application, content_cluster(), capacity(2))
        assert indices(hosts) == [0, 1, 2, 3]
        assert retired_indices(hosts) == [2, 3]
        active = tester.nodes(application, NodeState.active)
        assert len(active) == 4
        assert len(active.retired()) == 2
        for node in active.retired():
            assert node.history.event(EventType.retired) is not None

    def test_growing_content_cluster_unretires_lowest_index(self, tester):
        tester.make_ready_nodes(4)
        application = tester.make_application_id()

        tester.prepare_and_activate(application, content_cluster(), capacity(4))
        tester.prepare_and_activate(application, content_cluster(), capacity(2))
        hosts = tester.prepare_and_activate(application, content_cluster(), capacity(3))
        assert indices(hosts) == [0, 1, 2, 3]
        assert retired_indices(hosts) == [3]

    def test_remove_deactivates_all_nodes(self, tester):
        tester.make_ready_nodes(2)
        application = tester.make_application_id()
        tester.prepare_and_activate(application, container_cluster(), capacity(2))

        tester.provisioner.remove(application)
        assert len(tester.nodes(application, NodeState.inactive)) == 2
        assert not tester.nodes(application, NodeState.active)

    def test_zero_nodes_requested_returns_nothing(self, tester):
        tester.make_ready_nodes(2)
        application = tester.make_application_id()
        assert tester.prepare(application, container_cluster(), capacity(0)) == []

    def test_restart_bumps_generation_of_application_nodes(self, tester):
        tester.make_ready_nodes(4)
        app1 = tester.make_application_id()
        app2 = tester.make_application_id()
        tester.prepare_and_activate(app1, container_cluster(), capacity(2))
        tester.prepare_and_activate(app2, container_cluster(), capacity(2))

        restarted = tester.provisioner.restart(app1, NodeFilter())
        assert len(restarted) == 2
        for node in tester.nodes(app1):
            assert node.allocation.restart_generation.wanted == 1
            assert node.allocation.restart_generation.pending
        for node in tester.nodes(app2):
            assert not node.allocation.restart_generation.pending


class TestOutOfCapacity:
    def test_reserves_nothing_when_request_cannot_be_met(self, tester):
        tester.make_ready_nodes(2)
        application = tester.make_application_id()

        with pytest.raises(OutOfCapacityError) as e:
            tester.prepare(application, container_cluster(), capacity(3))
        assert "Could not satisfy request for 3 nodes with" in str(e.value)
        assert NOT_ENOUGH_NODES in str(e.value)
        assert len(tester.node_repository.list(NodeState.ready)) == 2
        assert not tester.nodes(application)

    def test_request_which_may_not_fail_gets_what_is_available(self, tester):
        tester.make_ready_nodes(2)
        application = tester.make_application_id()

        hosts = tester.prepare(application, container_cluster(), capacity(3, can_fail=False))
        assert indices(hosts) == [0, 1]

    def test_single_node_is_rejected_in_prod(self, tester):
        tester.make_ready_nodes(2)
        application = tester.make_application_id()

        with pytest.raises(InvalidSpecificationError) as e:
            tester.prepare(application, container_cluster(), capacity(1))
        assert "require at least 2 nodes per cluster for redundancy" in str(e.value)

    def test_too_small_resources_are_rejected(self, tester):
        tester.make_ready_nodes(2)
        application = tester.make_application_id()
        tiny = NodeResources(vcpu=1, memory_gb=2, disk_gb=10, bandwidth_gbps=1)

        with pytest.raises(InvalidSpecificationError) as e:
            tester.prepare(application, container_cluster(), capacity(2, resources=tiny))
        assert str(e.value) == (
            "container cluster 'container0': Min memory size is 2.00 Gb but "
            "must be at least 4.00 Gb"
        )

    def test_nodes_must_divide_into_groups(self, tester):
        tester.make_ready_nodes(3)
        application = tester.make_application_id()

        with pytest.raises(InvalidSpecificationError):
            tester.prepare(application, content_cluster(), capacity(3, groups=2))

    def test_expired_budget_fails_before_allocating(self, tester):
        tester.make_ready_nodes(2)
        application = tester.make_application_id()
        budget = TimeoutBudget(tester.clock, timedelta(minutes=1))
        tester.clock.advance(timedelta(minutes=2))

        with pytest.raises(ProvisionTimeoutError) as e:
            tester.provisioner.prepare(
                application, container_cluster(), capacity(2), budget
            )
        assert "pre-allocation" in str(e.value)
        assert len(tester.node_repository.list(NodeState.ready)) == 2


class TestEnvironments:
    @pytest.mark.parametrize(
        "environment,requested,expected",
        [
            (Environment.dev, 3, 1),
            (Environment.test, 3, 1),
            (Environment.perf, 5, 3),
            (Environment.staging, 20, 2),
            (Environment.prod, 5, 5),
        ],
    )
    def test_size_is_decided_by_environment(self, environment, requested, expected):
        tester = ProvisioningTester(environment)
        tester.make_ready_nodes(6)
        application = tester.make_application_id()

        hosts = tester.prepare(application, container_cluster(), capacity(requested))
        assert len(hosts) == expected

    def test_required_capacity_is_not_scaled_down(self):
        tester = ProvisioningTester(Environment.dev)
        tester.make_ready_nodes(3)
        application = tester.make_application_id()
        required = Capacity.from_count(3, resources=SMALL, required=True)

        assert len(tester.prepare(application, container_cluster(), required)) == 3

    def test_default_resources_are_used_when_none_requested(self):
        tester = ProvisioningTester(Environment.dev)
        tester.make_ready_nodes(1, flavor="default")
        application = tester.make_application_id()

        hosts = tester.prepare(
            application, container_cluster(), capacity(1, resources=None)
        )
        assert hosts[0].requested_resources == tester.flavors.get_flavor("default").resources


class TestRetirement:
    def test_node_wanting_to_retire_is_replaced(self, tester):
        tester.make_ready_nodes(3)
        application = tester.make_application_id()
        hosts = tester.prepare_and_activate(application, content_cluster(), capacity(2))
        leaving = hosts[0].hostname
        tester.node_repository.set_want_to_retire(leaving, True, Agent.operator)

        hosts = tester.prepare_and_activate(application, content_cluster(), capacity(2))
        assert indices(hosts) == [0, 1, 2]
        assert retired_indices(hosts) == [0]
        assert tester.node(leaving).is_retired

    def test_request_which_may_not_fail_does_not_retire(self, tester):
        tester.make_ready_nodes(3)
        application = tester.make_application_id()
        hosts = tester.prepare_and_activate(application, content_cluster(), capacity(2))
        tester.node_repository.set_want_to_retire(hosts[0].hostname, True, Agent.operator)

        hosts = tester.prepare(application, content_cluster(), capacity(2, can_fail=False))
        assert indices(hosts) == [0, 1]
        assert retired_indices(hosts) == []

    def test_ready_node_wanting_to_retire_is_not_allocated(self, tester):
        ready = tester.make_ready_nodes(3)
        tester.node_repository.set_want_to_retire(ready[0].hostname, True, Agent.operator)
        application = tester.make_application_id()

        hosts = tester.prepare(application, container_cluster(), capacity(2))
        assert ready[0].hostname not in hostnames(hosts)


class TestClusterChanges:
    def test_content_and_combined_clusters_share_nodes(self, tester):
        tester.make_ready_nodes(4)
        application = tester.make_application_id()
        content = content_cluster("search")
        combined = content.model_copy(update={"type": ClusterType.combined})

        first = tester.prepare_and_activate(application, content, capacity(2))
        second = tester.prepare_and_activate(application, combined, capacity(2))
        assert hostnames(first) == hostnames(second)
        for node in tester.nodes(application, NodeState.active):
            assert node.membership.cluster.type == ClusterType.combined

    def test_changing_cluster_type_takes_new_nodes(self, tester):
        tester.make_ready_nodes(4)
        application = tester.make_application_id()

        first = tester.prepare_and_activate(application, container_cluster("c"), capacity(2))
        second = tester.prepare_and_activate(application, content_cluster("c"), capacity(2))
        assert not set(hostnames(first)) & set(hostnames(second))
        # Indices continue after the ones the old nodes had
        assert indices(second) == [2, 3]
        assert len(tester.nodes(application, NodeState.inactive)) == 2

    def test_major_version_downgrade_takes_new_nodes(self, tester):
        tester.make_ready_nodes(4)
        application = tester.make_application_id()
        old = container_cluster().model_copy(update={"vespa_version": "6.1.0"})

        first = tester.prepare_and_activate(application, container_cluster(), capacity(2))
        second = tester.prepare(application, old, capacity(2))
        assert not set(hostnames(first)) & set(hostnames(second))

    def test_activation_fails_when_reservation_expired(self, tester):
        tester.make_ready_nodes(2)
        application = tester.make_application_id()
        hosts = tester.prepare(application, container_cluster(), capacity(2))

        tester.clock.advance(timedelta(minutes=11))
        expirer = ReservationExpirer(
            tester.node_repository, timedelta(minutes=10), timedelta(minutes=1), JobControl()
        )
        assert expirer.run()
        with pytest.raises(ActivationConflictError) as e:
            tester.activate(application, hosts)
        assert "Could not find all requested hosts" in str(e.value)
        assert len(tester.node_repository.list(NodeState.dirty)) == 2


class TestGroups:
    def test_nodes_are_spread_over_groups(self, tester):
        tester.make_ready_nodes(4)
        application = tester.make_application_id()

        hosts = tester.prepare_and_activate(application, content_cluster(), capacity(4, groups=2))
        groups = sorted(host.membership.cluster.group for host in hosts)
        assert groups == [0, 0, 1, 1]
        assert indices(hosts) == [0, 1, 2, 3]

    def test_fewer_groups_moves_nodes_into_remaining_group(self, tester):
        tester.make_ready_nodes(4)
        application = tester.make_application_id()
        tester.prepare_and_activate(application, content_cluster(), capacity(4, groups=2))

        hosts = tester.prepare_and_activate(application, content_cluster(), capacity(4))
        assert {host.membership.cluster.group for host in hosts} == {0}
        assert indices(hosts) == [0, 1, 2, 3]
        assert retired_indices(hosts) == []

    def test_surplus_nodes_of_removed_groups_are_retired(self, tester):
        tester.make_ready_nodes(4)
        application = tester.make_application_id()
        tester.prepare_and_activate(application, content_cluster(), capacity(4, groups=2))

        hosts = tester.prepare_and_activate(application, content_cluster(), capacity(2))
        assert {host.membership.cluster.group for host in hosts} == {0}
        assert indices(hosts) == [0, 1, 2, 3]
        assert retired_indices(hosts) == [2, 3]


class TestRanges:
    @staticmethod
    def range_capacity(min_nodes, max_nodes):
        return Capacity.from_resources(
            ClusterResources(nodes=min_nodes, node_resources=SMALL),
            ClusterResources(nodes=max_nodes, node_resources=MEDIUM),
        )

    def test_range_takes_what_is_available_up_to_max(self, tester):
        tester.make_ready_nodes(3)
        tester.make_ready_nodes(2, flavor="medium")
        application = tester.make_application_id()

        hosts = tester.prepare(application, container_cluster(), self.range_capacity(2, 4))
        assert len(hosts) == 4
        for host in hosts:
            assert host.requested_resources == host.resources

    def test_range_accepts_fewer_than_max(self, tester):
        tester.make_ready_nodes(3)
        application = tester.make_application_id()

        hosts = tester.prepare(application, container_cluster(), self.range_capacity(2, 4))
        assert len(hosts) == 3

    def test_range_fails_below_min(self, tester):
        tester.make_ready_nodes(1)
        application = tester.make_application_id()

        with pytest.raises(OutOfCapacityError):
            tester.prepare(application, container_cluster(), self.range_capacity(2, 4))


class TestVirtualNodes:
    def test_nodes_of_a_cluster_are_put_on_separate_hosts(self, tester):
        hosts = tester.make_hosts(2)
        tester.make_ready_children(hosts, per_host=2)
        application = tester.make_application_id()

        with pytest.raises(OutOfCapacityError) as e:
            tester.prepare(application, content_cluster(), capacity(3))
        assert REJECTED_PARENT_HOST in e.value.reasons

        allocated = tester.prepare(application, content_cluster(), capacity(2))
        assert sorted(host.parent_hostname for host in allocated) == ["host-001", "host-002"]

    def test_nodes_may_share_hosts_outside_prod(self):
        tester = ProvisioningTester(Environment.perf)
        hosts = tester.make_hosts(2)
        tester.make_ready_children(hosts, per_host=2)
        application = tester.make_application_id()

        assert len(tester.prepare(application, content_cluster(), capacity(3))) == 3

    def test_exclusive_cluster_keeps_hosts_to_itself(self, tester):
        hosts = tester.make_hosts(2)
        tester.make_ready_children(hosts, per_host=2)
        app1 = tester.make_application_id()
        app2 = tester.make_application_id()

        tester.prepare_and_activate(app1, container_cluster(exclusive=True), capacity(2))
        for node in tester.nodes(app1):
            assert node.membership.cluster.exclusive

        with pytest.raises(OutOfCapacityError) as e:
            tester.prepare(app2, container_cluster(), capacity(2))
        assert e.value.reasons == (REJECTED_EXCLUSIVITY,)

    def test_exclusive_cluster_does_not_share_hosts(self, tester):
        hosts = tester.make_hosts(2)
        tester.make_ready_children(hosts, per_host=2)
        app1 = tester.make_application_id()
        app2 = tester.make_application_id()

        tester.prepare_and_activate(app1, container_cluster(), capacity(2))
        with pytest.raises(OutOfCapacityError) as e:
            tester.prepare(app2, container_cluster(exclusive=True), capacity(2))
        assert REJECTED_EXCLUSIVITY in str(e.value)

    def test_instances_of_an_application_share_exclusive_hosts(self, tester):
        hosts = tester.make_hosts(2)
        tester.make_ready_children(hosts, per_host=2)
        default = tester.make_application_id()
        beta = default.model_copy(update={"instance": "beta"})

        tester.prepare_and_activate(default, container_cluster(exclusive=True), capacity(2))
        allocated = tester.prepare_and_activate(
            beta, container_cluster(exclusive=True), capacity(2)
        )
        assert sorted(host.parent_hostname for host in allocated) == ["host-001", "host-002"]

    def test_nodes_are_resized_in_place(self, tester):
        hosts = tester.make_hosts(2)
        tester.make_ready_children(hosts)
        application = tester.make_application_id()
        first = tester.prepare_and_activate(application, container_cluster(), capacity(2))

        second = tester.prepare_and_activate(
            application, container_cluster(), capacity(2, resources=MEDIUM)
        )
        assert hostnames(first) == hostnames(second)
        for node in tester.nodes(application, NodeState.active):
            assert node.resources.just_numbers() == MEDIUM.just_numbers()
            assert node.resources.storage_type == StorageType.local
            assert node.allocation.requested_resources == MEDIUM

    def test_new_nodes_are_created_on_hosts_with_free_capacity(self, tester):
        tester.make_hosts(2, pool_size=2)
        application = tester.make_application_id()

        hosts = tester.prepare_and_activate(application, container_cluster(), capacity(2))
        assert hostnames(hosts) == ["host-001-new-0", "host-002-new-0"]
        for node in tester.nodes(application, NodeState.active):
            assert node.parent_hostname is not None
            assert node.resources.storage_type == StorageType.local
            assert node.history.event(EventType.provisioned) is not None

    def test_no_new_nodes_when_dynamic_provisioning_is_off(self):
        tester = ProvisioningTester(config=ProvisioningConfig(dynamic_virtual_nodes=False))
        tester.make_hosts(2, pool_size=2)
        application = tester.make_application_id()

        with pytest.raises(OutOfCapacityError):
            tester.prepare(application, container_cluster(), capacity(2))


def test_timeout_budget_logs_steps(tester):
    budget = TimeoutBudget(tester.clock, timedelta(minutes=1))
    tester.clock.advance(timedelta(seconds=20))
    budget.assert_not_expired("first")
    assert budget.time_left == timedelta(seconds=40)

    tester.clock.advance(timedelta(seconds=50))
    with pytest.raises(ProvisionTimeoutError) as e:
        budget.assert_not_expired("second")
    assert "first: 20s, second: 70s" in str(e.value)
    assert budget.time_left == timedelta(0)
