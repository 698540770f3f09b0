"""PADM Prometheus exporter package.

A long-running exporter that authenticates against a PADM automation API,
polls the configured process variables, and exposes their latest values
for Prometheus scraping.
"""

__version__ = "0.1.0"
