"""Signing credential loading for the Sentinel agent."""

import json
import logging
from typing import Optional

from solders.keypair import Keypair
from solders.pubkey import Pubkey

logger = logging.getLogger(__name__)


def load_keypair(private_key: str) -> Keypair:
    """
    Load a keypair from a base58 string or a JSON byte array ``[1,2,3,...]``.

    Raises:
        ValueError: If the key is in neither format
    """
    private_key = private_key.strip()
    try:
        return Keypair.from_base58_string(private_key)
    except Exception:
        try:
            secret_bytes = bytes(json.loads(private_key))
            return Keypair.from_bytes(secret_bytes)
        except Exception as e:
            raise ValueError(f"Invalid private key format: {e}") from None


def resolve_signer(private_key: Optional[str]) -> Optional[Keypair]:
    """
    Return the signing keypair, or None for read-only mode.

    A malformed key is treated like a missing one: the agent keeps watching
    the wallet but never signs.
    """
    if not private_key:
        logger.warning("No wallet private key provided - READ-ONLY mode")
        return None
    try:
        keypair = load_keypair(private_key)
    except ValueError:
        logger.error("Failed to load private key (base58 or JSON array expected) - READ-ONLY mode")
        return None
    logger.info(f"Wallet loaded: {keypair.pubkey()}")
    return keypair


def resolve_address(signer: Optional[Keypair], configured_address: Optional[str]) -> Pubkey:
    """
    Address to watch: the signer's public key, else WALLET_ADDRESS.

    Raises:
        ValueError: If neither is available or the address is malformed
    """
    if signer is not None:
        address = signer.pubkey()
        if configured_address and configured_address != str(address):
            logger.warning(
                f"WALLET_ADDRESS {configured_address} differs from signer {address}; watching signer"
            )
        return address
    if not configured_address:
        raise ValueError("No wallet address configured")
    return Pubkey.from_string(configured_address.strip())
