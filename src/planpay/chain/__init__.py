"""EVM network table and transaction reader."""

from .networks import NETWORKS, Network, get_network, token_decimals, tokens_for
from .reader import ChainReader, JsonRpcClient, RPCError, checksum, same_address

__all__ = [
    "NETWORKS",
    "ChainReader",
    "JsonRpcClient",
    "Network",
    "RPCError",
    "checksum",
    "get_network",
    "same_address",
    "token_decimals",
    "tokens_for",
]
