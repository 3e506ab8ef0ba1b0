"""Prometheus exporter for Varnish Cache statistics gathered from varnishstat."""

__version__ = "1.6.1"