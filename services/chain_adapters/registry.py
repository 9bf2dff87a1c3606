"""Chain adapter lookup by chain identifier"""

import logging
from typing import Dict, Optional, Type

from config import SettlementConfig, get_settlement_config
from models import Chain
from services.chain_adapters.base import ChainPaymentAdapter
from services.chain_adapters.solana_adapter import SolanaPaymentAdapter
from services.chain_adapters.xrpl_adapter import XRPLPaymentAdapter
from services.chain_adapters.xrpl_evm_adapter import XRPLEVMPaymentAdapter
from utils.chain_detection import parse_chain

logger = logging.getLogger(__name__)

ADAPTER_CLASSES: Dict[Chain, Type[ChainPaymentAdapter]] = {
    Chain.XRPL: XRPLPaymentAdapter,
    Chain.XRPL_EVM: XRPLEVMPaymentAdapter,
    Chain.SOLANA: SolanaPaymentAdapter,
}


class ChainAdapterRegistry:
    """Lazily constructs one adapter per chain; tests may register fakes"""

    def __init__(self, settlement_config: Optional[SettlementConfig] = None):
        self.settlement_config = settlement_config or get_settlement_config()
        self._adapters: Dict[Chain, ChainPaymentAdapter] = {}

    def register(self, chain, adapter: ChainPaymentAdapter) -> None:
        self._adapters[parse_chain(chain)] = adapter

    def get(self, chain) -> ChainPaymentAdapter:
        chain = parse_chain(chain)
        adapter = self._adapters.get(chain)
        if adapter is None:
            adapter = ADAPTER_CLASSES[chain](self.settlement_config)
            self._adapters[chain] = adapter
            logger.info(f"✅ CHAIN_ADAPTERS: initialized {chain.value} adapter ({self.settlement_config.network})")
        return adapter


_registry: Optional[ChainAdapterRegistry] = None


def get_adapter_registry() -> ChainAdapterRegistry:
    global _registry
    if _registry is None:
        _registry = ChainAdapterRegistry()
    return _registry


def get_chain_adapter(chain) -> ChainPaymentAdapter:
    """Adapter for chain; UnsupportedChainError for unknown chains"""
    return get_adapter_registry().get(chain)
