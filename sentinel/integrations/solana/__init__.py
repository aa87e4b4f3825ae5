"""
Solana DeFi integrations

- Jupiter: swap quotes and unsigned transactions
- Marinade, Kamino, DefiLlama: yield scanners
"""

from .jupiter import JupiterClient, JupiterError, SwapQuote
from .marinade import MarinadeScanner
from .kamino import KaminoScanner
from .defillama import DefiLlamaScanner

__all__ = [
    'JupiterClient',
    'JupiterError',
    'SwapQuote',
    'MarinadeScanner',
    'KaminoScanner',
    'DefiLlamaScanner',
]
