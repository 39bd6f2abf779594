"""
Monitoring module for MSTB trading bot.

Prometheus collectors and the MetricsManager helper.
"""

from .metrics import REGISTRY, MetricsManager

__all__ = ["REGISTRY", "MetricsManager"]
