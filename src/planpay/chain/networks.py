"""Supported EVM networks and their payment tokens."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from planpay.config import OnchainSettings, TokenContract


@dataclass(frozen=True)
class Network:
    chain_id: int
    key: str
    name: str
    native_symbol: str
    rpc_url: str
    explorer_url: str
    is_testnet: bool = False
    native_decimals: int = 18


ETHEREUM = Network(1, "ethereum", "Ethereum Mainnet", "ETH", "https://eth.llamarpc.com", "https://etherscan.io")
BSC = Network(56, "bsc", "BNB Smart Chain", "BNB", "https://bsc-dataseed.binance.org", "https://bscscan.com")
POLYGON = Network(137, "polygon", "Polygon", "MATIC", "https://polygon-rpc.com", "https://polygonscan.com")
SEPOLIA = Network(
    11155111, "sepolia", "Sepolia Testnet", "ETH",
    "https://rpc.sepolia.org", "https://sepolia.etherscan.io", is_testnet=True,
)
POLYGON_AMOY = Network(
    80002, "polygon_amoy", "Polygon Amoy Testnet", "MATIC",
    "https://rpc-amoy.polygon.technology", "https://amoy.polygonscan.com", is_testnet=True,
)

NETWORKS: Dict[int, Network] = {
    n.chain_id: n for n in (ETHEREUM, BSC, POLYGON, SEPOLIA, POLYGON_AMOY)
}

# Stablecoin contracts on mainnets. Testnet tokens come from configuration.
BUILTIN_TOKENS: Dict[int, Dict[str, TokenContract]] = {
    1: {
        "USDT": TokenContract(address="0xdAC17F958D2ee523a2206206994597C13D831ec7", decimals=6),
        "USDC": TokenContract(address="0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", decimals=6),
    },
    56: {
        "USDT": TokenContract(address="0x55d398326f99059fF775485246999027B3197955", decimals=18),
        "USDC": TokenContract(address="0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d", decimals=18),
    },
    137: {
        "USDT": TokenContract(address="0xc2132D05D31c914a87C6611C10748AEb04B58e8F", decimals=6),
        "USDC": TokenContract(address="0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359", decimals=6),
    },
}


def get_network(chain_id: int) -> Optional[Network]:
    return NETWORKS.get(chain_id)


def tokens_for(chain_id: int, settings: OnchainSettings) -> Dict[str, TokenContract]:
    tokens = dict(BUILTIN_TOKENS.get(chain_id, {}))
    tokens.update(settings.token_contracts.get(chain_id, {}))
    return {symbol.upper(): token for symbol, token in tokens.items()}


def token_decimals(chain_id: int, symbol: str, settings: OnchainSettings) -> Optional[int]:
    """Decimals for a native or ERC-20 symbol on a chain; None if unknown."""
    network = get_network(chain_id)
    if network is None:
        return None
    symbol = symbol.upper()
    if symbol == network.native_symbol:
        return network.native_decimals
    token = tokens_for(chain_id, settings).get(symbol)
    return token.decimals if token else None


def rpc_url_for(chain_id: int, settings: OnchainSettings) -> Optional[str]:
    if chain_id in settings.rpc_urls:
        return settings.rpc_urls[chain_id]
    network = get_network(chain_id)
    return network.rpc_url if network else None
