"""Allocation metrics collector for Nomad.

Lists allocations from the Nomad API, keeps the running ones and enriches
each of them concurrently with its allocation and node detail. Every
allocation whose lookups all succeed yields one memory limit sample;
allocations whose lookups fail are logged and skipped.
"""

import queue
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import structlog
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.metrics_core import Metric

from .. import nomadapi
from ..cache import NodeLookupCache

logger = structlog.get_logger(__name__)

RUNNING_STATUS = "running"

DEFAULT_MAX_CONCURRENCY = 64

MEMORY_LIMIT_METRIC = "nomad_allocation_memory_limit"
MEMORY_LIMIT_HELP = "Allocation memory limit"
MEMORY_LIMIT_LABELS = [
    "job",
    "group",
    "alloc",
    "alloc_id",
    "region",
    "datacenter",
    "node",
]

NodeLookup = Callable[[str], nomadapi.types.RawNode]


class IncompleteAllocationError(Exception):
    """Raised when an allocation detail lacks the fields needed for a sample."""


@dataclass(frozen=True)
class AllocationMemoryMetric:
    """Memory limit of a single running allocation with its identifying labels."""

    job: str
    group: str
    alloc: str
    alloc_id: str
    region: str
    datacenter: str
    node: str
    memory_limit: float

    @property
    def label_values(self) -> list[str]:
        """Label values ordered as in ``MEMORY_LIMIT_LABELS``."""
        return [
            self.job,
            self.group,
            self.alloc,
            self.alloc_id,
            self.region,
            self.datacenter,
            self.node,
        ]


def filter_by_status(
    allocations: Sequence[nomadapi.types.RawAllocationStub],
    status: str,
) -> list[nomadapi.types.RawAllocationStub]:
    """Select allocations whose client status equals ``status`` exactly.

    Comparison is case-sensitive and input order is preserved.

    Args:
        allocations: Allocation summaries to filter.
        status: Client status to keep (e.g., "running").

    Returns:
        Matching allocations, possibly empty.
    """
    return [alloc for alloc in allocations if alloc.client_status == status]


def _transform_allocation(
    alloc: nomadapi.types.RawAllocation,
    node: nomadapi.types.RawNode,
) -> AllocationMemoryMetric:
    """Combine allocation and node detail into an AllocationMemoryMetric.

    Raises:
        IncompleteAllocationError: If the allocation has no job or resources.
    """
    if alloc.job is None or alloc.resources is None:
        msg = f"allocation {alloc.id} has no job or resources"
        raise IncompleteAllocationError(msg)

    return AllocationMemoryMetric(
        job=alloc.job.name,
        group=alloc.task_group,
        alloc=alloc.name,
        alloc_id=alloc.id,
        region=alloc.job.region,
        datacenter=node.datacenter,
        node=node.name,
        memory_limit=float(alloc.resources.memory_mb),
    )


def _enrich(
    client: nomadapi.NomadApiClient,
    get_node: NodeLookup,
    stub: nomadapi.types.RawAllocationStub,
    results: "queue.Queue[AllocationMemoryMetric]",
) -> None:
    """Enrich one running allocation and push its sample onto ``results``.

    Failures are logged and produce nothing.
    """
    try:
        alloc = client.get_allocation(stub.id)
    except Exception:
        logger.exception("Failed to fetch allocation", alloc_id=stub.id)
        return

    try:
        node = get_node(alloc.node_id)
    except Exception:
        logger.exception(
            "Failed to fetch node",
            alloc_id=stub.id,
            node_id=alloc.node_id,
        )
        return

    try:
        metric = _transform_allocation(alloc, node)
    except IncompleteAllocationError:
        logger.exception("Skipping incomplete allocation", alloc_id=stub.id)
        return

    results.put(metric)


def fetch(
    client: nomadapi.NomadApiClient,
    max_concurrency: int | None = DEFAULT_MAX_CONCURRENCY,
    dedupe_node_lookups: bool = True,
) -> list[AllocationMemoryMetric]:
    """Fetch memory limit metrics for every running allocation.

    Lists all allocations, keeps the running ones and runs one enrichment
    task per allocation on a thread pool. Returns only after every task has
    finished. Sample order is unspecified.

    Args:
        client: API client to use for fetching.
        max_concurrency: Maximum number of concurrent enrichment tasks.
            ``None`` runs one worker per running allocation.
        dedupe_node_lookups: Share node lookups between allocations placed
            on the same node during this call.

    Returns:
        List of allocation memory metrics.

    Raises:
        nomadapi.NomadApiError: If the allocation list cannot be fetched.
    """
    allocations = client.list_allocations()
    running = filter_by_status(allocations, RUNNING_STATUS)
    logger.debug(
        "Listed allocations",
        total=len(allocations),
        running=len(running),
    )
    if not running:
        return []

    get_node: NodeLookup = client.get_node
    if dedupe_node_lookups:
        get_node = NodeLookupCache(client.get_node).get

    workers = len(running)
    if max_concurrency is not None:
        workers = min(workers, max_concurrency)

    results: queue.Queue[AllocationMemoryMetric] = queue.Queue()
    with ThreadPoolExecutor(
        max_workers=workers,
        thread_name_prefix="nomad-enrich",
    ) as executor:
        for stub in running:
            executor.submit(_enrich, client, get_node, stub, results)

    metrics = []
    while not results.empty():
        metrics.append(results.get_nowait())

    logger.debug(
        "Enriched allocations",
        running=len(running),
        emitted=len(metrics),
    )
    return metrics


def describe_metrics() -> Iterator[Metric]:
    """Yield the allocation metric descriptors without samples."""
    yield GaugeMetricFamily(
        MEMORY_LIMIT_METRIC,
        MEMORY_LIMIT_HELP,
        labels=MEMORY_LIMIT_LABELS,
    )


def generate_metrics(allocations: list[AllocationMemoryMetric]) -> Iterator[Metric]:
    """Generate Prometheus metrics from allocation data.

    Creates a single nomad_allocation_memory_limit gauge with one sample
    per allocation.

    Args:
        allocations: List of allocation memory metrics.

    Yields:
        Prometheus Metric objects.
    """
    memory_limit = GaugeMetricFamily(
        MEMORY_LIMIT_METRIC,
        MEMORY_LIMIT_HELP,
        labels=MEMORY_LIMIT_LABELS,
    )
    for alloc in allocations:
        memory_limit.add_metric(alloc.label_values, alloc.memory_limit)
    yield memory_limit
