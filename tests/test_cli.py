import json
import logging
import stat
import sys
import threading
import urllib.request
from http.server import HTTPServer

import pytest

from varnish_exporter.cli import StartParams, get_version, main, make_handler, parse_args
from varnish_exporter.exporter import PrometheusExporter
from varnish_exporter.varnish import Varnishstat

VERSION_LINE = "varnishstat (varnish-6.5.1 revision 1dae23376bb5ea7a6b8e9e4b9ed95cdc9469fb64)"
PAYLOAD = json.dumps(
    {
        "MAIN.uptime": {
            "description": "Child process uptime",
            "flag": "c",
            "format": "d",
            "value": 42,
        }
    }
)


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    package_logger = logging.getLogger("varnish_exporter")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)


@pytest.fixture
def varnishstat_exe(tmp_path):
    script = tmp_path / "varnishstat"
    script.write_text(
        f"#!{sys.executable}\n"
        "import sys\n"
        "if '-V' in sys.argv[1:]:\n"
        f"    print({VERSION_LINE!r})\n"
        "else:\n"
        f"    sys.stdout.write({PAYLOAD!r})\n"
    )
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return str(script)


def test_get_version_dev():
    assert get_version(True) == "dev"
    assert get_version(False) == "dev"


def test_parse_args_defaults():
    params = parse_args([])
    assert params.listen_address == ":9131"
    assert params.path == "/metrics"
    assert params.health_path == ""
    assert params.varnishstat_exe == "varnishstat"
    assert not params.exclude_vbe
    assert not params.test


def test_parse_args_flags():
    params = parse_args(
        [
            "-web.listen-address", ":1234",
            "-web.telemetry-path=/stats",
            "-n", "inst",
            "-N", "vsm",
            "-docker-container-name", "box",
            "-e",
            "-verbose",
            "-exit-on-errors",
        ]
    )
    assert params.listen_address == ":1234"
    assert params.path == "/stats"
    assert (params.instance, params.vsm) == ("inst", "vsm")
    assert params.docker_container == "box"
    assert params.exclude_vbe and params.verbose and params.exit_on_errors
    assert not params.test


def test_validate_accepts_defaults():
    params = StartParams(health_path="/health")
    params.validate()
    assert params.path == "/metrics"


@pytest.mark.parametrize(
    "path, health_path, match",
    [
        ("", "", "telemetry-path cannot be empty"),
        ("metrics", "", "telemetry-path cannot be empty"),
        ("/metrics", "health", "health-path must start"),
        ("/metrics", "/metrics", "cannot have same value"),
    ],
)
def test_validate_errors(path, health_path, match):
    with pytest.raises(ValueError, match=match):
        StartParams(path=path, health_path=health_path).validate()


def test_main_version(capsys):
    assert main(["-version"]) == 0
    assert capsys.readouterr().out == "prometheus_varnish_exporter dev\n"


def test_main_invalid_path(capsys):
    with pytest.raises(SystemExit) as info:
        main(["-raw", "-web.telemetry-path", "metrics"])
    assert info.value.code == 1
    assert "[FATAL] -web.telemetry-path" in capsys.readouterr().out


def test_main_test_mode(varnishstat_exe, capsys):
    assert main(["-raw", "-test", "-varnishstat-path", varnishstat_exe]) == 0
    out = capsys.readouterr().out
    assert "Found varnishstat 6.5.1 1dae23376bb5ea7a6b8e9e4b9ed95cdc9469fb64" in out
    assert 'fqName: "varnish_main_uptime"' in out
    assert "Test scrape done in" in out


def test_main_test_mode_missing_varnishstat(tmp_path, capsys):
    with pytest.raises(SystemExit) as info:
        main(["-raw", "-test", "-varnishstat-path", str(tmp_path / "missing")])
    assert info.value.code == 1
    assert "[FATAL] Varnish version initialize failed" in capsys.readouterr().out


@pytest.fixture
def serve():
    servers = []

    def start(exporter, params):
        server = HTTPServer(("127.0.0.1", 0), make_handler(exporter, params))
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        servers.append((server, thread))
        return f"http://127.0.0.1:{server.server_address[1]}"

    yield start
    for server, thread in servers:
        server.shutdown()
        server.server_close()
        thread.join()


def fetch(url):
    with urllib.request.urlopen(url, timeout=10) as response:
        return response.status, response.headers["Content-Type"], response.read().decode()


def test_handler_routes(varnishstat_exe, serve):
    exporter = PrometheusExporter(Varnishstat(exe=varnishstat_exe))
    base = serve(exporter, StartParams(health_path="/health"))

    status, content_type, body = fetch(base + "/metrics")
    assert status == 200
    assert content_type.startswith("text/plain; version=0.0.4")
    assert "varnish_up 1\n" in body

    status, _, body = fetch(base + "/")
    assert status == 200
    assert '<a href="/metrics">Metrics</a>' in body

    status, _, body = fetch(base + "/health")
    assert (status, body) == (200, "Ok\n")

    _, _, body = fetch(base + "/elsewhere")
    assert "<h1>Varnish Exporter</h1>" in body


def test_handler_metrics_on_root(varnishstat_exe, serve):
    exporter = PrometheusExporter(Varnishstat(exe=varnishstat_exe))
    base = serve(exporter, StartParams(path="/"))
    _, _, root = fetch(base + "/")
    _, _, other = fetch(base + "/anything")
    assert "# TYPE varnish_up gauge" in root
    assert "# TYPE varnish_up gauge" in other