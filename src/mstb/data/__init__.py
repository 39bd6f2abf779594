"""
Data module for MSTB trading bot.

Exchange connectors for live, paper and simulated trading.
"""

from .exchange import CcxtExchangeConnector, PaperExchangeConnector

__all__ = [
    "CcxtExchangeConnector",
    "PaperExchangeConnector",
]
