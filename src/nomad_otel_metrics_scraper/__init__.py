"""Nomad OTLP Metrics Scraper.

Polls the Nomad HTTP API for jobs and allocations and exports per-job
desired and running counts as OpenTelemetry metrics over OTLP.
"""

__version__ = "0.1.0"
