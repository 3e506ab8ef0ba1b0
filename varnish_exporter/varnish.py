"""Running varnishstat and turning its JSON output into metrics."""

from __future__ import annotations

import enum
import json
import logging
import math
import re
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .naming import compute_prometheus_info, prometheus_group
from .utils import string_property

logger = logging.getLogger(__name__)

VBE_RELOAD = "VBE.reload_"

_UINT64_LIMIT = 1 << 64
_DIGITS = re.compile(r"[0-9]+")
_VERSION = re.compile(
    r"(?P<major>\d+)(\.(?P<minor>\d+))?(\.(?P<patch>\d+))?"
    r"(.*revision\s(?P<revision>[0-9a-f]*)\))?",
    re.ASCII,
)


class ScrapeError(Exception):
    """Raised when varnishstat cannot be run or its output cannot be read."""

    def __init__(self, message: str, output: bytes = b"") -> None:
        super().__init__(message)
        self.output = output


class MetricType(enum.Enum):
    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass(frozen=True)
class Metric:
    """One sample with its name, help text, type and labels."""

    name: str
    description: str
    type: MetricType
    value: float
    label_keys: tuple[str, ...] = ()
    label_values: tuple[str, ...] = ()

    @property
    def labels(self) -> dict[str, str]:
        return dict(zip(self.label_keys, self.label_values))


@dataclass
class VarnishVersion:
    """Version of the installed varnishstat; -1 marks an unknown part."""

    major: int = -1
    minor: int = -1
    patch: int = -1
    revision: str = ""

    def parse_version(self, text: str) -> None:
        """Fill in the version parts found in ``text``; raise ValueError if none."""
        match = _VERSION.search(text)
        if match:
            for name, value in match.groupdict().items():
                if not value:
                    continue
                if name == "revision":
                    self.revision = value
                else:
                    setattr(self, name, int(value))
        if not self.valid():
            raise ValueError(f"Failed to resolve version from {text!r}")

    def equals_or_greater(self, major: int, minor: int) -> bool:
        if self.major > major:
            return True
        return self.major == major and self.minor >= minor

    def valid(self) -> bool:
        return self.major != -1

    def labels(self) -> dict[str, str]:
        labels: dict[str, str] = {}
        for name in ("major", "minor", "patch"):
            number = getattr(self, name)
            if number != -1:
                labels[name] = str(number)
        if self.revision:
            labels["revision"] = self.revision
        labels["version"] = self.version_string()
        return labels

    def version_string(self) -> str:
        """Numeric version without the revision."""
        return ".".join(
            str(number) for number in (self.major, self.minor, self.patch) if number != -1
        )

    def __str__(self) -> str:
        version = self.version_string()
        if self.revision:
            version += " " + self.revision
        return version


@dataclass
class VarnishstatParams:
    """Instance selection options passed on to varnishstat."""

    instance: str = ""
    vsm: str = ""

    def is_empty(self) -> bool:
        return not self.instance and not self.vsm

    def make(self, version: VarnishVersion) -> list[str]:
        args: list[str] = []
        if self.instance:
            args += ["-n", self.instance]
        # -N is not supported before 4.0
        if self.vsm and version.equals_or_greater(4, 0):
            args += ["-N", self.vsm]
        return args


@dataclass
class Varnishstat:
    """How to run varnishstat, directly or inside a docker container."""

    exe: str = "varnishstat"
    docker_container: str = ""
    params: VarnishstatParams = field(default_factory=VarnishstatParams)

    def execute(self, *args: str) -> bytes:
        """Run varnishstat and return its combined stdout and stderr."""
        if self.docker_container:
            command = ["docker", "exec", "-t", self.docker_container, self.exe, *args]
        else:
            command = [self.exe, *args]
        try:
            completed = subprocess.run(
                command, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, check=False
            )
        except OSError as exc:
            raise ScrapeError(str(exc)) from exc
        if completed.returncode != 0:
            raise ScrapeError(f"exit status {completed.returncode}", completed.stdout)
        return completed.stdout

    def query_version(self, version: VarnishVersion) -> VarnishVersion:
        """Fill ``version`` from the first line of ``varnishstat -V``."""
        lines = self.execute("-V").decode("utf-8", errors="replace").splitlines()
        if not lines:
            raise ScrapeError("Failed to get varnishstat -V output")
        version.parse_version(lines[0])
        return version

    def scrape(
        self, version: VarnishVersion, exclude_vbe: bool = False, verbose: bool = False
    ) -> list[Metric]:
        """Run ``varnishstat -j`` and return the metrics it reports."""
        args = ["-j"]
        if version.equals_or_greater(4, 1):
            # From 4.1 a zero timeout makes varnishstat exit at once on connection errors.
            args += ["-t", "0"]
        if not self.params.is_empty():
            args += self.params.make(version)
        try:
            output = self.execute(*args)
        except ScrapeError as exc:
            raise ScrapeError(f"{self.exe} scrape failed: {exc}", exc.output) from exc
        return scrape_varnish_from(output, exclude_vbe, verbose)


def find_most_recent_vbe_reload_prefix(counters: Mapping[str, Any]) -> str:
    """Return the newest "VBE.reload_<stamp>" prefix, or "" before any reload."""
    most_recent = ""
    for v_name in counters:
        if v_name.startswith(VBE_RELOAD) and v_name.endswith(".happy"):
            dot = v_name.find(".", len(VBE_RELOAD))
            prefix = v_name[:dot]
            if prefix > most_recent:
                most_recent = prefix
    return most_recent


def is_outdated_vbe(v_name: str, most_recent_prefix: str) -> bool:
    """Return whether a VBE counter belongs to a VCL older than the latest reload."""
    return (
        bool(most_recent_prefix)
        and v_name.startswith("VBE.")
        and not v_name.startswith(most_recent_prefix)
    )


class _Number(str):
    """A JSON number kept as its literal text."""


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON number {name}")


_DECODER = json.JSONDecoder(
    parse_int=_Number, parse_float=_Number, parse_constant=_reject_constant
)


def _decode(data: bytes | str) -> dict[str, Any]:
    text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
    output = data if isinstance(data, bytes) else data.encode("utf-8")
    try:
        document, _ = _DECODER.raw_decode(text.lstrip(" \t\r\n"))
    except ValueError as exc:
        raise ScrapeError(str(exc), output) from exc
    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ScrapeError(
            f"cannot read {type(document).__name__} as a counter object", output
        )
    return document


def _counters(document: dict[str, Any]) -> dict[str, Any]:
    raw_version = document.get("version")
    if raw_version is None:
        return document
    if not isinstance(raw_version, _Number):
        raise ScrapeError(f"Unhandled json stats version type: {raw_version!r}")
    try:
        version = int(raw_version)
    except ValueError as exc:
        raise ScrapeError(f"Unhandled json stats version type: {exc}") from exc
    if version != 1:
        raise ScrapeError(f"Unimplemented json stats version {version}")
    counters = document.get("counters")
    if not isinstance(counters, dict):
        raise ScrapeError("json stats version 1 has no counters object")
    return counters


def _read_counter(v_name: str, data: dict[str, Any], flag: str) -> tuple[str, str, float, int]:
    description = data.get("description", "")
    if not isinstance(description, str):
        raise ValueError(f"{v_name} description it not a string")
    identifier = data.get("ident", "")
    if not isinstance(identifier, str):
        raise ValueError(f"{v_name} ident it not a string")
    value, bits = 0.0, 0
    if "value" in data:
        number = data["value"]
        if not isinstance(number, _Number):
            raise ValueError(f"{v_name} value it not a float64")
        value = float(number)
        if math.isinf(value):
            raise ValueError(f"{v_name} value float64 error: {number} out of range")
        if flag == "b":
            if not _DIGITS.fullmatch(number) or int(number) >= _UINT64_LIMIT:
                raise ValueError(f"{v_name} value uint64 error: invalid value {number}")
            bits = int(number)
    return description, identifier, value, bits


def scrape_varnish_from(
    data: bytes | str, exclude_vbe: bool = False, verbose: bool = False
) -> list[Metric]:
    """Turn ``varnishstat -j`` output into metrics; raise ScrapeError on bad input."""
    counters = _counters(_decode(data))
    most_recent_prefix = find_most_recent_vbe_reload_prefix(counters)
    metrics: list[Metric] = []

    for v_name, raw in counters.items():
        if is_outdated_vbe(v_name, most_recent_prefix):
            continue
        if exclude_vbe and v_name.startswith("VBE."):
            continue
        if v_name == "timestamp":
            continue
        if not isinstance(raw, dict):
            if verbose:
                logger.warning("Found unexpected data from json: %s: %r", v_name, raw)
            continue

        try:
            flag = string_property(raw, "flag")
        except TypeError:
            flag = ""
        try:
            description, identifier, value, bits = _read_counter(v_name, raw, flag)
        except ValueError as exc:
            if verbose:
                logger.warning("%s", exc)
            continue

        info = compute_prometheus_info(v_name, prometheus_group(v_name), identifier, description)
        metric_type = MetricType.COUNTER if flag in ("c", "a") else MetricType.GAUGE
        metrics.append(
            Metric(info.name, info.description, metric_type, value, info.label_keys, info.label_values)
        )

        # The lowest bit of the happy bitmap is the latest health probe result.
        if info.name == "varnish_backend_happy":
            metrics.append(
                Metric(
                    "varnish_backend_up",
                    "Backend up as per the latest health probe",
                    MetricType.GAUGE,
                    1.0 if bits & 1 else 0.0,
                    info.label_keys,
                    info.label_values,
                )
            )
    return metrics