# varnish_exporter

A Prometheus exporter for Varnish Cache. On every scrape it runs
`varnishstat -j`, turns the counters into Prometheus metrics and serves
them over HTTP in the text exposition format. It has no dependencies
outside the Python standard library.

## What it exports

- Counters are named `varnish_<group>_<name>`, where the group is one of
  `backend`, `mempool`, `lck`, `sma`, `smf`, `mgt` or `main`. Lock counters
  are renamed to `varnish_lock_collisions`, `varnish_lock_created`,
  `varnish_lock_destroyed` and `varnish_lock_operations`.
- Per-object identifiers become labels: `backend` and `server` for backend
  statistics, `target` for locks, `type` for storage, `id` otherwise.
- Fetch, session and worker-thread counters are folded into
  `varnish_main_fetch`, `varnish_main_sessions` and
  `varnish_main_worker_threads` with a `type` label, plus a `_total` metric.
- `varnish_backend_up` is derived from the lowest bit of each backend's
  `happy` bitmap, i.e. the latest health probe.
- After a VCL reload, only `VBE.` statistics of the most recent reload are
  exported.
- `varnish_up` is 1 when the last scrape worked and 0 otherwise;
  `varnish_version` carries the Varnish version as labels.

Counters flagged `c` or `a` are exported as counters, everything else as
gauges. Both the older flat `varnishstat -j` output and the version 1 format
with a `counters` object are understood.

## Installation

    pip install .

The exporter needs `varnishstat` on the host, or it can run `varnishstat`
inside a Docker container through `docker exec`.

## Usage

    varnish-exporter

By default it listens on `:9131` and serves metrics at `/metrics`. When the
metrics path is not `/`, the root path shows a small HTML page linking to it.
Each option may be written with one or two leading dashes.

| Option | Meaning |
| --- | --- |
| `-web.listen-address ADDR` | Address to listen on (default `:9131`) |
| `-web.telemetry-path PATH` | Path for metrics (default `/metrics`); must start with `/` |
| `-web.health-path PATH` | Path for a health check that answers `Ok`; disabled unless set |
| `-varnishstat-path PATH` | Path to `varnishstat` (default `varnishstat`) |
| `-n NAME` | `varnishstat -n` value |
| `-N FILE` | `varnishstat -N` value, passed only for Varnish 4.0 and later |
| `-docker-container-name NAME` | Run `varnishstat` in this Docker container |
| `-e` | Leave out statistics whose names start with `VBE.` |
| `-exit-on-errors` | Stop the process with status 1 when a scrape fails |
| `-verbose` | Log skipped counters and scrape timings |
| `-raw` | Log to stdout without timestamps |
| `-with-go-metrics` | Add a `python_info` gauge describing the running interpreter |
| `-test` | Check that `varnishstat` works, log the metrics found, then exit |
| `-version` | Print the version and exit |
| `-no-exit` | Deprecated; not exiting on scrape errors is already the default |

Check the setup before deploying:

    varnish-exporter -test

Then point Prometheus at it:

```yaml
scrape_configs:
  - job_name: varnish
    static_configs:
      - targets: ["localhost:9131"]
```

## Using it from Python

Turn saved `varnishstat -j` output into exposition text:

```python
from varnish_exporter.varnish import scrape_varnish_from
from varnish_exporter.exporter import format_metrics

with open("stats.json", "rb") as fh:
    metrics = scrape_varnish_from(fh.read(), exclude_vbe=False, verbose=False)
print(format_metrics(metrics))
```

`scrape_varnish_from` returns a list of `Metric` objects and raises
`ScrapeError` on output it cannot read.

Run `varnishstat` directly:

```python
from varnish_exporter.varnish import Varnishstat, VarnishVersion
from varnish_exporter.exporter import PrometheusExporter

varnishstat = Varnishstat(exe="varnishstat")
version = varnishstat.query_version(VarnishVersion())
exporter = PrometheusExporter(varnishstat, version)
exporter.initialize()
print(exporter.render())
```

`varnish_exporter.naming.compute_prometheus_info` maps a single varnishstat
counter to a `MetricInfo` holding its Prometheus name, description and labels.