"""Collection of varnish metrics and their Prometheus text exposition."""

from __future__ import annotations

import logging
import math
import platform
import threading
import time
from collections.abc import Iterable
from decimal import Decimal

from .naming import NAMESPACE
from .varnish import Metric, MetricType, ScrapeError, Varnishstat, VarnishVersion

logger = logging.getLogger(__name__)

UP_HELP = "Was the last scrape of varnish successful."
VERSION_HELP = "Varnish version information"
CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


class ExitHandler:
    """Remembers the last scrape error and optionally ends the process on one."""

    def __init__(self, exit_on_error: bool = False) -> None:
        self.exit_on_error = exit_on_error
        self._error: str | None = None
        self._lock = threading.Lock()

    @property
    def error(self) -> str | None:
        """Message of the current error, or None."""
        with self._lock:
            return self._error

    def set(self, error: BaseException | str | None) -> BaseException | str | None:
        """Record ``error`` (None clears it), log it once and return it.

        Raises SystemExit(1) when exiting on errors is enabled.
        """
        with self._lock:
            if error is None:
                self._error = None
                return None
            message = str(error)
            differs = self._error != message
            self._error = message
            if self.exit_on_error:
                logger.critical("%s", message)
                raise SystemExit(1)
            if differs:
                logger.error("%s", message)
            return error

    def has_error(self) -> bool:
        with self._lock:
            return self._error is not None


class PrometheusExporter:
    """Scrapes varnishstat on demand and adds the up and version gauges."""

    def __init__(
        self,
        varnishstat: Varnishstat | None = None,
        version: VarnishVersion | None = None,
        exit_handler: ExitHandler | None = None,
        *,
        exclude_vbe: bool = False,
        verbose: bool = False,
        runtime_metrics: bool = False,
    ) -> None:
        self.varnishstat = varnishstat if varnishstat is not None else Varnishstat()
        self.version = version if version is not None else VarnishVersion()
        self.exit_handler = exit_handler if exit_handler is not None else ExitHandler()
        self.exclude_vbe = exclude_vbe
        self.verbose = verbose
        self.runtime_metrics = runtime_metrics
        self._version_metric: Metric | None = None
        self._lock = threading.Lock()

    def initialize(self) -> None:
        """Create the version gauge from the known varnish version."""
        self._version_metric = self._version_gauge(1.0)

    def _version_gauge(self, value: float) -> Metric:
        labels = sorted(self.version.labels().items())
        return Metric(
            f"{NAMESPACE}_version",
            VERSION_HELP,
            MetricType.GAUGE,
            value,
            tuple(key for key, _ in labels),
            tuple(label for _, label in labels),
        )

    def collect(self) -> list[Metric]:
        """Scrape varnishstat and return every metric of this exporter."""
        start = time.monotonic()
        with self._lock:
            # varnish may have been installed after the exporter started
            if not self.version.valid():
                try:
                    self.varnishstat.query_version(self.version)
                except (ScrapeError, ValueError):
                    pass
                else:
                    self._version_metric = self._version_gauge(0.0)

            had_error = self.exit_handler.has_error()
            error: ScrapeError | None = None
            try:
                metrics = self.varnishstat.scrape(self.version, self.exclude_vbe, self.verbose)
            except ScrapeError as exc:
                metrics, error = [], exc
            self.exit_handler.set(error)

            if error is None and had_error:
                logger.info("Successful scrape")
            up = 1.0 if error is None else 0.0
            metrics.append(Metric(f"{NAMESPACE}_up", UP_HELP, MetricType.GAUGE, up))
            if self._version_metric is not None:
                metrics.append(self._version_metric)
            if self.runtime_metrics:
                metrics.append(_python_info())

        if self.verbose:
            postfix = " (scrape failed)" if error is not None else ""
            elapsed = time.monotonic() - start
            logger.info("prometheus.Collector.Collect   %.6fs%s", elapsed, postfix)
        return metrics

    def render(self) -> str:
        """Collect and return the metrics in the text exposition format."""
        return format_metrics(self.collect())


def _python_info() -> Metric:
    major, minor, patch = platform.python_version_tuple()
    return Metric(
        "python_info",
        "Python platform information",
        MetricType.GAUGE,
        1.0,
        ("implementation", "major", "minor", "patchlevel", "version"),
        (platform.python_implementation(), major, minor, patch, platform.python_version()),
    )


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _escape_label(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_float(value: float) -> str:
    """Shortest decimal form, switching to exponent form as the exposition format does."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "0"
    sign = "-" if value < 0 else ""
    exact = Decimal(repr(abs(value))).normalize()
    _, digit_tuple, exponent = exact.as_tuple()
    digits = "".join(str(d) for d in digit_tuple)
    point = len(digits) + int(exponent)
    exp = point - 1
    if exp < -4 or exp >= 6:
        mantissa = digits[0] + ("." + digits[1:] if len(digits) > 1 else "")
        exp_sign = "-" if exp < 0 else "+"
        return f"{sign}{mantissa}e{exp_sign}{abs(exp):02d}"
    if point <= 0:
        return f"{sign}0.{'0' * -point}{digits}"
    if point >= len(digits):
        return f"{sign}{digits}{'0' * (point - len(digits))}"
    return f"{sign}{digits[:point]}.{digits[point:]}"


def _sorted_labels(metric: Metric) -> list[tuple[str, str]]:
    return sorted(zip(metric.label_keys, metric.label_values))


def _sample_line(metric: Metric) -> str:
    pairs = _sorted_labels(metric)
    labels = ",".join(f'{key}="{_escape_label(value)}"' for key, value in pairs)
    name = f"{metric.name}{{{labels}}}" if pairs else metric.name
    return f"{name} {_format_float(metric.value)}"


def format_metrics(metrics: Iterable[Metric]) -> str:
    """Render metrics grouped into families sorted by name, samples sorted by labels."""
    families: dict[str, tuple[str, MetricType, list[Metric]]] = {}
    for metric in metrics:
        families.setdefault(metric.name, (metric.description, metric.type, []))[2].append(metric)

    lines: list[str] = []
    for name in sorted(families):
        help_text, metric_type, members = families[name]
        lines.append(f"# HELP {name} {_escape_help(help_text)}")
        lines.append(f"# TYPE {name} {metric_type.value}")
        members.sort(key=lambda m: tuple(value for _, value in _sorted_labels(m)))
        lines.extend(_sample_line(member) for member in members)
    return "".join(line + "\n" for line in lines)