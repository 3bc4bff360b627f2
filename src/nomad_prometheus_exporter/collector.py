"""Prometheus collector implementation using composition pattern.

Provides the collector registered with the Prometheus registry. Data
fetching and metric generation are injected, so the collector only owns
the per-scrape cycle: availability first, then domain metrics.
"""

from collections.abc import Callable, Iterator
from typing import Generic, TypeAlias, TypeVar

import structlog
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.metrics_core import Metric
from prometheus_client.registry import Collector

logger = structlog.get_logger(__name__)

T = TypeVar("T")

UP_METRIC = "nomad_up"
UP_HELP = "Was the last query of Nomad successful."

Fetcher: TypeAlias = Callable[[], list[T]]
MetricsGenerator: TypeAlias = Callable[[list[T]], Iterator[Metric]]
MetricsDescriber: TypeAlias = Callable[[], Iterator[Metric]]


def _up_metric() -> GaugeMetricFamily:
    return GaugeMetricFamily(UP_METRIC, UP_HELP)


class NomadCollector(Collector, Generic[T]):
    """Prometheus collector for Nomad metrics using composition pattern.

    Separates concerns through dependency injection:
    - Data fetching (via Fetcher function with injected dependencies)
    - Metric generation (via MetricsGenerator function)
    - Metric descriptors (via MetricsDescriber function)

    Every scrape runs one independent collection cycle; nothing is kept
    between scrapes.
    """

    def __init__(
        self,
        fetcher: Fetcher[T],
        generator: MetricsGenerator[T],
        describer: MetricsDescriber,
        scraper_description: str,
    ):
        """Initialize the Nomad collector.

        Args:
            fetcher: Function that fetches and transforms data (with
                dependencies pre-injected).
            generator: Function that generates Prometheus metrics from data.
            describer: Function yielding the domain metric descriptors.
            scraper_description: Description of the scraper for logging
                (e.g., API base URL).
        """
        self._fetcher = fetcher
        self._generator = generator
        self._describer = describer
        self._scraper_desc = scraper_description

    def describe(self) -> Iterator[Metric]:
        """Describe exported metrics without touching the Nomad API.

        Called by the registry at registration time.

        Yields:
            Prometheus Metric objects without samples.
        """
        yield _up_metric()
        yield from self._describer()

    def collect(self) -> Iterator[Metric]:
        """Collect metrics for Prometheus scrape.

        Yields ``nomad_up`` with value 1 unconditionally, then the domain
        metrics. When fetching fails the error is logged and no domain
        metrics are yielded; ``nomad_up`` still reports 1.

        Yields:
            Prometheus Metric objects.
        """
        up = _up_metric()
        up.add_metric([], 1)
        yield up

        try:
            data = self._fetcher()
        except Exception:
            logger.exception(
                "Failed to fetch metrics for collection",
                scraper=self._scraper_desc,
            )
            return

        yield from self._generator(data)
