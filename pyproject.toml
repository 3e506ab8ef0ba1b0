[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "varnish_exporter"
version = "1.6.1"
description = "Prometheus exporter for Varnish Cache statistics gathered from varnishstat"
requires-python = ">=3.10"
keywords = ["varnish", "prometheus", "exporter", "metrics", "monitoring", "varnishstat"]
classifiers = [
    "Development Status :: 5 - Production/Stable",
    "Environment :: Console",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
    "Topic :: Internet :: WWW/HTTP",
]
dependencies = []

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
varnish-exporter = "varnish_exporter.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["varnish_exporter"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
