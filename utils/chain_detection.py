"""Chain inference from transaction hash and address formats"""

import re
from typing import Optional

from models import Chain
from utils.payment_errors import UnsupportedChainError

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
XRPL_ALPHABET = "rpshnaf39wBUDNEGHJKLM4PQRST7VWXYZ2bcdeCg65jkm8oFqi1tuvAxyz"

_SOLANA_SIGNATURE = re.compile(rf"^[{BASE58_ALPHABET}]{{87,88}}$")
_XRPL_TX_HASH = re.compile(r"^[0-9A-Fa-f]{64}$")
_EVM_TX_HASH = re.compile(r"^0x[0-9A-Fa-f]{64}$")

_SOLANA_ADDRESS = re.compile(rf"^[{BASE58_ALPHABET}]{{32,44}}$")
_XRPL_ADDRESS = re.compile(rf"^r[{XRPL_ALPHABET}]{{24,34}}$")
_EVM_ADDRESS = re.compile(r"^0x[0-9A-Fa-f]{40}$")


def detect_chain_from_tx_hash(tx_hash: Optional[str]) -> Optional[Chain]:
    """Infer the chain from a transaction reference, or None if the format is unknown"""
    if not tx_hash:
        return None
    tx_hash = tx_hash.strip()
    if _EVM_TX_HASH.match(tx_hash):
        return Chain.XRPL_EVM
    if _XRPL_TX_HASH.match(tx_hash):
        return Chain.XRPL
    if _SOLANA_SIGNATURE.match(tx_hash):
        return Chain.SOLANA
    return None


def resolve_chain(chain: Optional[str], tx_hash: Optional[str] = None) -> Optional[Chain]:
    """Stored chain value first, hash format second"""
    if chain:
        try:
            return Chain(chain)
        except ValueError:
            return None
    return detect_chain_from_tx_hash(tx_hash)


def is_valid_address(chain: Chain, address: Optional[str]) -> bool:
    if not address:
        return False
    address = address.strip()
    if chain == Chain.XRPL:
        return bool(_XRPL_ADDRESS.match(address))
    if chain == Chain.XRPL_EVM:
        return bool(_EVM_ADDRESS.match(address))
    if chain == Chain.SOLANA:
        return bool(_SOLANA_ADDRESS.match(address))
    return False


def parse_chain(value) -> Chain:
    """Chain enum from a stored/request value; UnsupportedChainError otherwise"""
    if isinstance(value, Chain):
        return value
    try:
        return Chain(str(value).strip().lower())
    except ValueError:
        raise UnsupportedChainError(f"Unsupported chain: {value}")
