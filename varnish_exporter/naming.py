"""Mapping of varnishstat counter names onto Prometheus metric names and labels."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass

from .utils import starts_with, starts_with_any

NAMESPACE = "varnish"

# Group name and the lower-case counter prefixes that belong to it, in lookup order.
_GROUPS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("backend", ("vbe.",)),
    ("mempool", ("mempool.",)),
    ("lck", ("lck.",)),
    ("sma", ("sma.",)),
    ("smf", ("smf.",)),
    ("mgt", ("mgt.",)),
    ("main", ("main.",)),
)


@dataclass(frozen=True)
class _Grouping:
    prefix: str
    total: str
    desc: str
    new_prefix: str = ""
    label_key: str = ""


_GROUPINGS: tuple[_Grouping, ...] = (
    _Grouping(prefix="main_fetch", total="main_s_fetch", desc="Number of fetches"),
    _Grouping(
        new_prefix="main_sessions",
        prefix="main_sess",
        total="main_s_sess",
        desc="Number of sessions",
    ),
    _Grouping(
        new_prefix="main_worker_threads",
        prefix="main_n_wrk",
        total="main_n_wrk",
        desc="Number of worker threads",
    ),
)

_FQ_NAMES = {
    "varnish_lck_colls": "varnish_lock_collisions",
    "varnish_lck_creat": "varnish_lock_created",
    "varnish_lck_destroy": "varnish_lock_destroyed",
    "varnish_lck_locks": "varnish_lock_operations",
}

_FQ_IDENTIFIERS = {
    "varnish_lock_collisions": "target",
    "varnish_lock_created": "target",
    "varnish_lock_destroyed": "target",
    "varnish_lock_operations": "target",
    "varnish_sma_c_bytes": "type",
    "varnish_sma_c_fail": "type",
    "varnish_sma_c_freed": "type",
    "varnish_sma_c_req": "type",
    "varnish_sma_g_alloc": "type",
    "varnish_sma_g_bytes": "type",
    "varnish_sma_g_space": "type",
    "varnish_smf_c_bytes": "type",
    "varnish_smf_c_fail": "type",
    "varnish_smf_c_freed": "type",
    "varnish_smf_c_req": "type",
    "varnish_smf_g_alloc": "type",
    "varnish_smf_g_bytes": "type",
    "varnish_smf_g_smf_frag": "type",
    "varnish_smf_g_smf_large": "type",
    "varnish_smf_g_smf": "type",
    "varnish_smf_g_space": "type",
}

# (prefix:)<uuid>.<name>
_BACKEND_UUID = re.compile(
    r"([\[0-9A-Za-z]{8}-[0-9A-Za-z]{4}-[0-9A-Za-z]{4}-[89ABab][0-9A-Za-z]{3}-[0-9A-Za-z]{12})(.*)"
)
# <name>(<ip>,(<something>),<port>)
_BACKEND_PAREN = re.compile(r"(.*)\((.*)\)")


@dataclass(frozen=True)
class MetricInfo:
    """Prometheus name, help text and label pairs computed for one counter."""

    name: str
    description: str
    label_keys: tuple[str, ...] = ()
    label_values: tuple[str, ...] = ()

    @property
    def labels(self) -> dict[str, str]:
        return dict(zip(self.label_keys, self.label_values))


def find_label_value(name: str, keys: Sequence[str], values: Sequence[str]) -> str:
    """Return the value paired with label ``name``, or "" if there is none."""
    for index, key in enumerate(keys):
        if key == name:
            return values[index] if index < len(values) else ""
    return ""


def clean_backend_name(name: str) -> str:
    """Strip VCL bookkeeping prefixes from a backend name."""
    name = name.strip(".")
    for prefix in ("boot.", "root:"):
        if starts_with(name, prefix, ignore_case=True):
            name = name[len(prefix):]
    # reload_2019-08-29T100458.<name> (varnish_reload_vcl) or
    # reload_20191014_091124_78599.<name> (varnishreload)
    if name.startswith("reload_"):
        _, dot, rest = name.partition(".")
        if dot:
            name = rest
    return name


def trim_group_prefix(name: str) -> str:
    """Remove the first matching group prefix from ``name``, compared case-insensitively."""
    lowered = name.lower()
    for _, prefixes in _GROUPS:
        for prefix in prefixes:
            if lowered.startswith(prefix):
                return name[len(prefix):]
    return name


def prometheus_group(v_name: str) -> str:
    """Return the group a varnishstat counter belongs to; "main" by default."""
    lowered = v_name.lower()
    for group, prefixes in _GROUPS:
        if starts_with_any(lowered, prefixes):
            return group
    return "main"


def _backend_labels(identifier: str) -> list[tuple[str, str]]:
    hit = _BACKEND_UUID.search(identifier)
    if hit:
        return [("backend", clean_backend_name(hit.group(2))), ("server", hit.group(1))]
    hit = _BACKEND_PAREN.search(identifier)
    if hit:
        return [
            ("backend", clean_backend_name(hit.group(1))),
            ("server", hit.group(2).replace(",,", ":", 1)),
        ]
    # Label names must stay consistent between counters and between scrapes.
    return [("backend", clean_backend_name(identifier)), ("server", "unknown")]


def compute_prometheus_info(
    v_name: str, v_group: str, v_identifier: str, v_description: str
) -> MetricInfo:
    """Compute the Prometheus name, description and labels of a varnishstat counter."""
    # Newer varnishstat has no 'ident'; derive it from "<group>.<ident>.<name>".
    if not v_identifier and v_name.count(".") > 1:
        derived = trim_group_prefix(v_name.lower())
        v_identifier = derived[: derived.rfind(".")]

    fq = v_name.lower()
    if v_identifier:
        fq = fq.replace("." + v_identifier.lower(), "")
    fq = trim_group_prefix(fq)
    name = f"{NAMESPACE}_{v_group}_{fq.replace('.', '_')}"
    name = _FQ_NAMES.get(name) or name
    description = v_description

    labels: list[tuple[str, str]] = []
    if v_identifier:
        if v_name.startswith("VBE."):
            labels = _backend_labels(v_identifier)
        if not labels:
            labels = [(_FQ_IDENTIFIERS.get(name) or "id", v_identifier)]

    for grouping in _GROUPINGS:
        fq_total = f"{NAMESPACE}_{grouping.total}"
        fq_prefix = f"{NAMESPACE}_{grouping.prefix}"
        new_name = f"{NAMESPACE}_{grouping.new_prefix}" if grouping.new_prefix else fq_prefix
        if name == fq_total:
            # A total must not be a label value, it would break aggregation.
            name, description = new_name + "_total", grouping.desc
            break
        if len(name) > len(fq_prefix) + 1 and name.startswith(fq_prefix + "_"):
            labels.append((grouping.label_key or "type", name[len(fq_prefix) + 1:]))
            name, description = new_name, grouping.desc
            break

    return MetricInfo(
        name=name,
        description=description,
        label_keys=tuple(key for key, _ in labels),
        label_values=tuple(value for _, value in labels),
    )