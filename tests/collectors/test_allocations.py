"""Tests for the allocations collector module."""

import random
import threading
import time
from unittest.mock import MagicMock

import pytest
from prometheus_client.core import GaugeMetricFamily
from structlog.testing import capture_logs

from nomad_prometheus_exporter.collectors import allocations
from nomad_prometheus_exporter.nomadapi import client, types


def _stub(alloc_id: str, status: str = "running") -> types.RawAllocationStub:
    return types.RawAllocationStub(
        id=alloc_id,
        name=f"web.app[{alloc_id}]",
        client_status=status,
        job_id="web",
        task_group="app",
        node_id=f"node-{alloc_id}",
    )


def _alloc(
    alloc_id: str,
    node_id: str | None = None,
    memory_mb: int = 256,
) -> types.RawAllocation:
    return types.RawAllocation(
        id=alloc_id,
        name=f"web.app[{alloc_id}]",
        node_id=node_id or f"node-{alloc_id}",
        task_group="app",
        client_status="running",
        job=types.RawJob(id="web", name="web", region="global"),
        resources=types.RawResources(cpu=500, memory_mb=memory_mb),
    )


def _node(node_id: str) -> types.RawNode:
    return types.RawNode(id=node_id, name=f"host-{node_id}", datacenter="dc1")


@pytest.fixture
def mock_client() -> MagicMock:
    """Mock NomadApiClient serving allocation and node detail by ID."""
    mock = MagicMock(spec=client.NomadApiClient)
    mock.get_allocation.side_effect = lambda alloc_id: _alloc(alloc_id)
    mock.get_node.side_effect = _node
    return mock


# ---------------------------------------------------------------------------
# filter_by_status
# ---------------------------------------------------------------------------


def test_filter_by_status_keeps_matching_in_order():
    """Only allocations with the given status are kept, in input order."""
    allocs = [
        _stub("a", "running"),
        _stub("b", "pending"),
        _stub("c", "running"),
        _stub("d", "complete"),
        _stub("e", "running"),
    ]
    result = allocations.filter_by_status(allocs, "running")
    assert [a.id for a in result] == ["a", "c", "e"]


def test_filter_by_status_is_case_sensitive():
    """Status comparison does not normalise case."""
    allocs = [_stub("a", "Running"), _stub("b", "RUNNING"), _stub("c", "running")]
    result = allocations.filter_by_status(allocs, "running")
    assert [a.id for a in result] == ["c"]


def test_filter_by_status_is_idempotent():
    """Filtering an already filtered list returns the same list."""
    allocs = [_stub("a", "running"), _stub("b", "failed"), _stub("c", "running")]
    once = allocations.filter_by_status(allocs, "running")
    twice = allocations.filter_by_status(once, "running")
    assert twice == once


def test_filter_by_status_empty_input():
    """An empty input yields an empty list."""
    assert allocations.filter_by_status([], "running") == []


def test_filter_by_status_no_match():
    """No matching allocation yields an empty list rather than an error."""
    allocs = [_stub("a", "pending"), _stub("b", "lost")]
    assert allocations.filter_by_status(allocs, "running") == []


# ---------------------------------------------------------------------------
# transform_allocation
# ---------------------------------------------------------------------------


def test_transform_allocation_populates_all_labels():
    """Every label is taken from the matching allocation or node field."""
    alloc = _alloc("abc", node_id="n1", memory_mb=1024)
    node = _node("n1")

    metric = allocations._transform_allocation(alloc, node)

    assert metric.job == "web"
    assert metric.group == "app"
    assert metric.alloc == "web.app[abc]"
    assert metric.alloc_id == "abc"
    assert metric.region == "global"
    assert metric.datacenter == "dc1"
    assert metric.node == "host-n1"
    assert metric.memory_limit == 1024.0
    assert isinstance(metric.memory_limit, float)


def test_transform_allocation_label_values_order():
    """label_values follows MEMORY_LIMIT_LABELS ordering."""
    metric = allocations._transform_allocation(_alloc("abc", "n1"), _node("n1"))
    labels = dict(zip(allocations.MEMORY_LIMIT_LABELS, metric.label_values))
    assert labels["alloc_id"] == "abc"
    assert labels["node"] == "host-n1"
    assert labels["datacenter"] == "dc1"


def test_transform_allocation_without_resources_raises():
    """An allocation without a resources block cannot produce a sample."""
    alloc = types.RawAllocation(
        id="abc",
        job=types.RawJob(name="web", region="global"),
        resources=None,
    )
    with pytest.raises(allocations.IncompleteAllocationError):
        allocations._transform_allocation(alloc, _node("n1"))


def test_transform_allocation_without_job_raises():
    """An allocation without job metadata cannot produce a sample."""
    alloc = types.RawAllocation(id="abc", resources=types.RawResources(memory_mb=1))
    with pytest.raises(allocations.IncompleteAllocationError):
        allocations._transform_allocation(alloc, _node("n1"))


# ---------------------------------------------------------------------------
# fetch
# ---------------------------------------------------------------------------


def test_fetch_enriches_running_allocations_only(mock_client: MagicMock):
    """Only running allocations are looked up and returned."""
    mock_client.list_allocations.return_value = [
        _stub("a"),
        _stub("b", "pending"),
        _stub("c"),
    ]

    result = allocations.fetch(mock_client)

    assert {m.alloc_id for m in result} == {"a", "c"}
    looked_up = {c.args[0] for c in mock_client.get_allocation.call_args_list}
    assert looked_up == {"a", "c"}


def test_fetch_no_running_allocations(mock_client: MagicMock):
    """No running allocations means no lookups and an empty result."""
    mock_client.list_allocations.return_value = [_stub("a", "complete")]

    result = allocations.fetch(mock_client)

    assert result == []
    mock_client.get_allocation.assert_not_called()
    mock_client.get_node.assert_not_called()


def test_fetch_empty_response(mock_client: MagicMock):
    """An empty allocation list produces an empty result."""
    mock_client.list_allocations.return_value = []
    assert allocations.fetch(mock_client) == []


def test_fetch_list_failure_propagates(mock_client: MagicMock):
    """A failing list call is raised to the caller."""
    mock_client.list_allocations.side_effect = client.TransportError("down")

    with pytest.raises(client.TransportError):
        allocations.fetch(mock_client)

    mock_client.get_allocation.assert_not_called()


def test_fetch_allocation_failure_drops_only_that_allocation(mock_client: MagicMock):
    """A failing allocation lookup drops its sample and skips its node lookup."""
    mock_client.list_allocations.return_value = [_stub("a"), _stub("b"), _stub("c")]

    def get_allocation(alloc_id):
        if alloc_id == "b":
            raise client.NotFoundError("gone")
        return _alloc(alloc_id)

    mock_client.get_allocation.side_effect = get_allocation

    result = allocations.fetch(mock_client)

    assert {m.alloc_id for m in result} == {"a", "c"}
    looked_up_nodes = {c.args[0] for c in mock_client.get_node.call_args_list}
    assert "node-b" not in looked_up_nodes


def test_fetch_node_failure_drops_only_that_allocation(mock_client: MagicMock):
    """A failing node lookup drops the sample of the allocation on that node."""
    mock_client.list_allocations.return_value = [_stub("a"), _stub("b"), _stub("c")]

    def get_node(node_id):
        if node_id == "node-c":
            raise client.TransportError("timeout")
        return _node(node_id)

    mock_client.get_node.side_effect = get_node

    result = allocations.fetch(mock_client)

    assert {m.alloc_id for m in result} == {"a", "b"}


def test_fetch_allocation_failure_is_logged(mock_client: MagicMock):
    """A failed allocation lookup logs an error naming the allocation."""
    mock_client.list_allocations.return_value = [_stub("a"), _stub("b")]

    def get_allocation(alloc_id):
        if alloc_id == "b":
            raise client.NotFoundError("gone")
        return _alloc(alloc_id)

    mock_client.get_allocation.side_effect = get_allocation

    with capture_logs() as logs:
        allocations.fetch(mock_client)

    failures = [e for e in logs if e["event"] == "Failed to fetch allocation"]
    assert len(failures) == 1
    assert failures[0]["alloc_id"] == "b"
    assert failures[0]["log_level"] == "error"
    assert failures[0]["exc_info"] is True


def test_fetch_node_failure_is_logged(mock_client: MagicMock):
    """A failed node lookup logs an error naming the allocation and node."""
    mock_client.list_allocations.return_value = [_stub("a"), _stub("c")]

    def get_node(node_id):
        if node_id == "node-c":
            raise client.TransportError("timeout")
        return _node(node_id)

    mock_client.get_node.side_effect = get_node

    with capture_logs() as logs:
        allocations.fetch(mock_client)

    failures = [e for e in logs if e["event"] == "Failed to fetch node"]
    assert len(failures) == 1
    assert failures[0]["alloc_id"] == "c"
    assert failures[0]["node_id"] == "node-c"
    assert failures[0]["log_level"] == "error"
    assert failures[0]["exc_info"] is True


def test_fetch_incomplete_allocation_dropped(mock_client: MagicMock):
    """An allocation without resources produces no sample, not a zero sample."""
    mock_client.list_allocations.return_value = [_stub("a"), _stub("b")]

    def get_allocation(alloc_id):
        if alloc_id == "a":
            return types.RawAllocation(id="a", node_id="node-a")
        return _alloc(alloc_id)

    mock_client.get_allocation.side_effect = get_allocation

    result = allocations.fetch(mock_client)

    assert [m.alloc_id for m in result] == ["b"]


def test_fetch_node_lookup_uses_detail_node_id(mock_client: MagicMock):
    """The node is looked up by the node ID of the allocation detail."""
    mock_client.list_allocations.return_value = [_stub("a")]
    mock_client.get_allocation.side_effect = lambda alloc_id: _alloc(
        alloc_id,
        node_id="moved-node",
    )

    result = allocations.fetch(mock_client)

    mock_client.get_node.assert_called_once_with("moved-node")
    assert result[0].node == "host-moved-node"


def test_fetch_dedupes_node_lookups(mock_client: MagicMock):
    """Allocations sharing a node trigger a single node lookup."""
    mock_client.list_allocations.return_value = [_stub(str(i)) for i in range(5)]
    mock_client.get_allocation.side_effect = lambda alloc_id: _alloc(
        alloc_id,
        node_id="shared",
    )

    result = allocations.fetch(mock_client, dedupe_node_lookups=True)

    assert len(result) == 5
    mock_client.get_node.assert_called_once_with("shared")


def test_fetch_without_dedupe_looks_up_node_per_allocation(mock_client: MagicMock):
    """With de-duplication disabled each allocation looks up its node."""
    mock_client.list_allocations.return_value = [_stub(str(i)) for i in range(5)]
    mock_client.get_allocation.side_effect = lambda alloc_id: _alloc(
        alloc_id,
        node_id="shared",
    )

    result = allocations.fetch(mock_client, dedupe_node_lookups=False)

    assert len(result) == 5
    assert mock_client.get_node.call_count == 5


def test_fetch_shared_node_failure_drops_all_its_allocations(mock_client: MagicMock):
    """A failed shared node lookup drops every allocation placed on it."""
    mock_client.list_allocations.return_value = [_stub("a"), _stub("b"), _stub("c")]
    mock_client.get_allocation.side_effect = lambda alloc_id: _alloc(
        alloc_id,
        node_id="bad" if alloc_id in {"a", "b"} else "good",
    )

    def get_node(node_id):
        if node_id == "bad":
            raise client.TransportError("unreachable")
        return _node(node_id)

    mock_client.get_node.side_effect = get_node

    result = allocations.fetch(mock_client)

    assert [m.alloc_id for m in result] == ["c"]


def test_fetch_respects_max_concurrency(mock_client: MagicMock):
    """No more than max_concurrency lookups run at the same time."""
    max_concurrency = 3
    mock_client.list_allocations.return_value = [_stub(str(i)) for i in range(20)]
    lock = threading.Lock()
    active = 0
    peak = 0

    def get_allocation(alloc_id):
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.01)
        with lock:
            active -= 1
        return _alloc(alloc_id)

    mock_client.get_allocation.side_effect = get_allocation

    result = allocations.fetch(mock_client, max_concurrency=max_concurrency)

    assert len(result) == 20
    assert peak <= max_concurrency


def test_fetch_unbounded_concurrency(mock_client: MagicMock):
    """max_concurrency=None runs all lookups at once."""
    count = 10
    mock_client.list_allocations.return_value = [_stub(str(i)) for i in range(count)]
    barrier = threading.Barrier(count, timeout=5)

    def get_allocation(alloc_id):
        # Only passes if every allocation is being looked up concurrently
        barrier.wait()
        return _alloc(alloc_id)

    mock_client.get_allocation.side_effect = get_allocation

    result = allocations.fetch(mock_client, max_concurrency=None)

    assert len(result) == count


def test_fetch_concurrent_random_failures_exact_count(mock_client: MagicMock):
    """100 concurrent enrichments with random delays and failures lose nothing.

    The number of samples equals the number of allocations whose lookups
    both succeeded, with no duplicates.
    """
    rng = random.Random(1234)
    count = 100
    stubs = [_stub(f"alloc-{i}") for i in range(count)]
    failing_allocs = {s.id for s in stubs if rng.random() < 0.2}
    failing_nodes = {s.node_id for s in stubs if rng.random() < 0.2}
    delays = {s.id: rng.uniform(0, 0.005) for s in stubs}
    mock_client.list_allocations.return_value = stubs

    def get_allocation(alloc_id):
        time.sleep(delays[alloc_id])
        if alloc_id in failing_allocs:
            raise client.TransportError("boom")
        return _alloc(alloc_id)

    def get_node(node_id):
        time.sleep(0.001)
        if node_id in failing_nodes:
            raise client.NotFoundError("no node")
        return _node(node_id)

    mock_client.get_allocation.side_effect = get_allocation
    mock_client.get_node.side_effect = get_node

    result = allocations.fetch(mock_client, max_concurrency=None)

    expected = {
        s.id
        for s in stubs
        if s.id not in failing_allocs and s.node_id not in failing_nodes
    }
    actual_ids = [m.alloc_id for m in result]
    assert len(actual_ids) == len(expected)
    assert set(actual_ids) == expected


# ---------------------------------------------------------------------------
# describe_metrics / generate_metrics
# ---------------------------------------------------------------------------


def test_describe_metrics_has_no_samples():
    """The descriptor carries name, help and no samples."""
    described = list(allocations.describe_metrics())
    assert len(described) == 1
    assert described[0].name == "nomad_allocation_memory_limit"
    assert described[0].documentation == "Allocation memory limit"
    assert described[0].samples == []


def test_generate_metrics_one_sample_per_allocation():
    """Each allocation contributes one sample with its memory limit."""
    data = [
        allocations._transform_allocation(_alloc("a", memory_mb=128), _node("n1")),
        allocations._transform_allocation(_alloc("b", memory_mb=512), _node("n2")),
    ]
    metrics = list(allocations.generate_metrics(data))

    assert len(metrics) == 1
    family = metrics[0]
    assert isinstance(family, GaugeMetricFamily)
    values = {s.labels["alloc_id"]: s.value for s in family.samples}
    assert values == {"a": 128.0, "b": 512.0}


def test_generate_metrics_label_names():
    """Samples carry exactly the seven documented labels."""
    data = [allocations._transform_allocation(_alloc("a"), _node("n1"))]
    family = next(allocations.generate_metrics(data))
    assert set(family.samples[0].labels) == set(allocations.MEMORY_LIMIT_LABELS)


def test_generate_metrics_empty_list():
    """An empty list yields the family with no samples."""
    family = next(allocations.generate_metrics([]))
    assert family.samples == []
