"""Command line entry point and HTTP serving of the exporter."""

from __future__ import annotations

import argparse
import json
import logging
import socket
import sys
import time
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Callable, NoReturn
from urllib.parse import urlsplit

from .exporter import CONTENT_TYPE, ExitHandler, PrometheusExporter
from .varnish import Metric, ScrapeError, Varnishstat, VarnishstatParams, VarnishVersion

APPLICATION_NAME = "prometheus_varnish_exporter"
VERSION = ""
VERSION_HASH = ""
VERSION_DATE = ""

logger = logging.getLogger(__name__)
_PACKAGE_LOGGER = "varnish_exporter"

_LANDING_PAGE = """<html>
    <head><title>Varnish Exporter</title></head>
    <body>
        <h1>Varnish Exporter</h1>
    	<p><a href="{path}">Metrics</a></p>
    </body>
</html>"""


@dataclass
class StartParams:
    """Settings given on the command line."""

    listen_address: str = ":9131"
    path: str = "/metrics"
    health_path: str = ""
    varnishstat_exe: str = "varnishstat"
    docker_container: str = ""
    instance: str = ""
    vsm: str = ""
    verbose: bool = False
    exit_on_errors: bool = False
    test: bool = False
    raw: bool = False
    with_go_metrics: bool = False
    exclude_vbe: bool = False
    no_exit: bool = False
    show_version: bool = False

    def validate(self) -> None:
        """Raise ValueError when the HTTP paths are unusable."""
        if not self.path.startswith("/"):
            raise ValueError(
                "-web.telemetry-path cannot be empty and must start with a slash '/', "
                f"given {json.dumps(self.path)}"
            )
        if self.health_path and not self.health_path.startswith("/"):
            raise ValueError(
                "-web.health-path must start with a slash '/' if configured, "
                f"given {json.dumps(self.health_path)}"
            )
        if self.path == self.health_path:
            raise ValueError("-web.telemetry-path and -web.health-path cannot have same value")

    def _to_json(self) -> str:
        return json.dumps(
            {
                "ListenAddress": self.listen_address,
                "Path": self.path,
                "HealthPath": self.health_path,
                "VarnishstatExe": self.varnishstat_exe,
                "VarnishDockerContainer": self.docker_container,
                "Params": {"Instance": self.instance, "VSM": self.vsm},
                "Verbose": self.verbose,
                "ExitOnErrors": self.exit_on_errors,
                "Test": self.test,
                "Raw": self.raw,
                "WithGoMetrics": self.with_go_metrics,
            },
            indent=2,
        )


def get_version(with_date: bool) -> str:
    """Return the build version, or "dev" for an unversioned build."""
    if not VERSION:
        return "dev"
    version = f"v{VERSION} ({VERSION_HASH})"
    if with_date:
        version += " " + VERSION_DATE
    return version


def parse_args(argv: list[str] | None = None) -> StartParams:
    """Parse command line flags into StartParams."""
    defaults = StartParams()
    parser = argparse.ArgumentParser(prog=APPLICATION_NAME, allow_abbrev=False)

    def option(name: str, dest: str, help_text: str, **kwargs) -> None:
        parser.add_argument(f"-{name}", f"--{name}", dest=dest, help=help_text, **kwargs)

    def switch(name: str, dest: str, help_text: str) -> None:
        option(name, dest, help_text, action="store_true")

    option("web.listen-address", "listen_address", "Address on which to expose metrics and web interface.",
           default=defaults.listen_address)
    option("web.telemetry-path", "path", "Path under which to expose metrics.", default=defaults.path)
    option("web.health-path", "health_path",
           "Path under which to expose healthcheck. Disabled unless configured.", default=defaults.health_path)
    option("varnishstat-path", "varnishstat_exe", "Path to varnishstat.", default=defaults.varnishstat_exe)
    option("n", "instance", "varnishstat -n value.", default=defaults.instance)
    option("N", "vsm", "varnishstat -N value.", default=defaults.vsm)
    option("docker-container-name", "docker_container",
           "Docker container name to exec varnishstat in.", default=defaults.docker_container)
    switch("version", "show_version", "Print version and exit")
    switch("exit-on-errors", "exit_on_errors", "Exit process on scrape errors.")
    switch("verbose", "verbose", "Verbose logging.")
    switch("test", "test", "Test varnishstat availability, prints available metrics and exits.")
    switch("raw", "raw", "Raw stdout logging without timestamps.")
    switch("with-go-metrics", "with_go_metrics", "Export runtime metrics")
    switch("e", "exclude_vbe", "Exclude metrics starting with VBE.")
    switch("no-exit", "no_exit", "Deprecated: see -exit-on-errors")

    namespace = parser.parse_args(argv)
    return StartParams(**vars(namespace))


def _route(pattern: str, path: str) -> bool:
    return path == pattern or (pattern.endswith("/") and path.startswith(pattern))


def make_handler(exporter: PrometheusExporter, params: StartParams) -> type[BaseHTTPRequestHandler]:
    """Build a request handler serving metrics, the landing page and the health check."""

    def metrics() -> tuple[int, str, bytes]:
        return 200, CONTENT_TYPE, exporter.render().encode("utf-8")

    def landing() -> tuple[int, str, bytes]:
        return 200, "text/html; charset=utf-8", _LANDING_PAGE.format(path=params.path).encode("utf-8")

    def health() -> tuple[int, str, bytes]:
        # Only shows that connections are accepted.
        return 200, "text/plain; charset=utf-8", b"Ok\n"

    routes: dict[str, Callable[[], tuple[int, str, bytes]]] = {params.path: metrics}
    if params.path != "/":
        routes["/"] = landing
    if params.health_path:
        routes[params.health_path] = health

    class Handler(BaseHTTPRequestHandler):
        server_version = "varnish_exporter"

        def _respond(self, send_body: bool) -> None:
            path = urlsplit(self.path).path
            matches = [pattern for pattern in routes if _route(pattern, path)]
            if matches:
                status, content_type, body = routes[max(matches, key=len)]()
            else:
                status, content_type, body = 404, "text/plain; charset=utf-8", b"404 page not found\n"
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            if send_body:
                self.wfile.write(body)

        def do_GET(self) -> None:
            self._respond(True)

        def do_POST(self) -> None:
            self._respond(True)

        def do_HEAD(self) -> None:
            self._respond(False)

        def log_message(self, format: str, *args) -> None:
            # Request lines go to the debug level so that normal output stays quiet.
            logger.debug("%s %s", self.address_string(), format % args)

    return Handler


class _LevelFormatter(logging.Formatter):
    _PREFIXES = {logging.WARNING: "[WARN] ", logging.ERROR: "[ERROR] ", logging.CRITICAL: "[FATAL] "}

    def format(self, record: logging.LogRecord) -> str:
        record.prefix = self._PREFIXES.get(record.levelno, "")
        return super().format(record)


def _configure_logging(raw: bool) -> None:
    package_logger = logging.getLogger(_PACKAGE_LOGGER)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stdout)
    if raw:
        handler.setFormatter(_LevelFormatter("%(prefix)s%(message)s"))
    else:
        handler.setFormatter(
            _LevelFormatter("%(asctime)s %(prefix)s%(message)s", datefmt="%Y/%m/%d %H:%M:%S")
        )
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.INFO)


def _fatal(message: str) -> NoReturn:
    logger.critical("%s", message)
    raise SystemExit(1)


def _describe(metric: Metric) -> str:
    variable = " ".join(metric.label_keys)
    return (
        f"Desc{{fqName: {json.dumps(metric.name)}, help: {json.dumps(metric.description)}, "
        f"constLabels: {{}}, variableLabels: [{variable}]}}"
    )


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"address {address}: missing port in address")
    return host.strip("[]"), int(port)


class _Server(HTTPServer):
    allow_reuse_address = True


class _Server6(_Server):
    address_family = socket.AF_INET6


def main(argv: list[str] | None = None) -> int:
    params = parse_args(argv)
    if params.show_version:
        print(f"{APPLICATION_NAME} {get_version(True)}")
        return 0

    _configure_logging(params.raw)
    try:
        params.validate()
    except ValueError as exc:
        _fatal(str(exc))

    if params.no_exit:
        logger.warning(
            "-no-exit is deprecated. As of v1.5 it is the default behavior not to exit "
            "process on scrape errors. You can remove this parameter."
        )

    exit_handler = ExitHandler(exit_on_error=params.test or params.exit_on_errors)
    logger.info("%s %s %s", APPLICATION_NAME, get_version(False), params._to_json())

    version = VarnishVersion()
    varnishstat = Varnishstat(
        exe=params.varnishstat_exe,
        docker_container=params.docker_container,
        params=VarnishstatParams(instance=params.instance, vsm=params.vsm),
    )
    try:
        varnishstat.query_version(version)
    except (ScrapeError, ValueError) as exc:
        exit_handler.set(f"Varnish version initialize failed: {exc}")

    exporter = PrometheusExporter(
        varnishstat,
        version,
        exit_handler,
        exclude_vbe=params.exclude_vbe,
        verbose=params.verbose,
        runtime_metrics=params.with_go_metrics,
    )
    if version.valid():
        logger.info("Found varnishstat %s", version)
        exporter.initialize()

    # Verify everything works before serving.
    start = time.monotonic()
    try:
        metrics = varnishstat.scrape(version, params.exclude_vbe, params.verbose)
    except ScrapeError as exc:
        if exc.output:
            print("\n" + exc.output.decode("utf-8", errors="replace"))
        exit_handler.set(f"Startup test: {exc}")
    else:
        if params.test:
            for metric in metrics:
                logger.info("%s", _describe(metric))
        logger.info("Test scrape done in %.6fs", time.monotonic() - start)
        print()
    if params.test:
        return 0

    logger.info("Server starting on %s with metrics path %s", params.listen_address, params.path)
    handler = make_handler(exporter, params)
    try:
        host, port = _split_address(params.listen_address)
        server_class = _Server6 if ":" in host else _Server
        server = server_class((host, port), handler)
    except (OSError, ValueError) as exc:
        _fatal(str(exc))
    with server:
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            return 0
    return 0