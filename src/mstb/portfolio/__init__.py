"""
Portfolio layer: capital allocation, cross-instrument risk and the
coordinator that filters every engine's signals.
"""

from mstb.portfolio.allocation import AllocationManager, AllocationStrategy
from mstb.portfolio.coordinator import PortfolioCoordinator, create_coordinator
from mstb.portfolio.risk import PortfolioRiskAnalyzer, pearson

__all__ = [
    "AllocationManager",
    "AllocationStrategy",
    "PortfolioCoordinator",
    "PortfolioRiskAnalyzer",
    "create_coordinator",
    "pearson",
]
