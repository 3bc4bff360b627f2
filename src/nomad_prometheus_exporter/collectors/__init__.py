"""Collectors package for Nomad metrics.

Each collector module provides fetch, describe_metrics and generate_metrics
functions that are composed by the NomadCollector class.
"""
