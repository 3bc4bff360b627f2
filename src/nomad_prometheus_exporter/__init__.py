"""Nomad Prometheus Exporter.

Prometheus exporter for HashiCorp Nomad that reports exporter availability
and per-allocation memory limits of running allocations via the Nomad HTTP
API.
"""

__version__ = "0.1.0"
