"""
Monitoring

Wallet balance monitoring.
"""

from .balance_monitor import BalanceMonitor, lamports_to_sol

__all__ = [
    'BalanceMonitor',
    'lamports_to_sol',
]
