"""
Read-only chain access for payment verification.

One JSON-RPC client per chain id, created on first use and shared across
requests. Observations are never cached; every verification re-queries the
node.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

import httpx
from web3 import Web3

from planpay.config import OnchainSettings
from planpay.errors import ErrorKind, Failure
from planpay.models import ChainObservation

from .networks import get_network, rpc_url_for, tokens_for

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


class RPCError(Exception):
    """JSON-RPC error returned by the node."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        self.message = message
        self.code = code
        self.data = data
        super().__init__(f"RPC Error {code}: {message}")


def checksum(address: str) -> str:
    return Web3.to_checksum_address(address)


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    try:
        return checksum(a) == checksum(b)
    except (ValueError, TypeError):
        return False


def _hex_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    return int(value, 16)


def _topic_address(topic: str) -> str:
    return checksum("0x" + topic[-40:])


class JsonRpcClient:
    """Minimal async JSON-RPC client for a single chain."""

    def __init__(
        self,
        chain_id: int,
        url: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.chain_id = chain_id
        self.url = url
        self._request_id = 0
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            transport=transport,
        )

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }
        response = await self._client.post(self.url, json=payload)
        response.raise_for_status()
        result = response.json()
        if "error" in result:
            error = result["error"] or {}
            raise RPCError(
                message=error.get("message", str(error)),
                code=error.get("code"),
                data=error.get("data"),
            )
        return result.get("result")

    async def get_block_number(self) -> int:
        return int(await self.call("eth_blockNumber"), 16)

    async def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionByHash", [tx_hash])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    async def close(self) -> None:
        await self._client.aclose()


class ChainReader:
    """Observes transactions on the supported networks."""

    def __init__(
        self,
        settings: OnchainSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._settings = settings
        self._transport = transport
        self._clients: Dict[int, JsonRpcClient] = {}

    def client_for(self, chain_id: int) -> Optional[JsonRpcClient]:
        client = self._clients.get(chain_id)
        if client is None:
            url = rpc_url_for(chain_id, self._settings)
            if url is None:
                return None
            client = JsonRpcClient(
                chain_id,
                url,
                timeout=self._settings.rpc_timeout_seconds,
                transport=self._transport,
            )
            self._clients[chain_id] = client
        return client

    async def head(self, chain_id: int) -> Union[int, Failure]:
        client = self.client_for(chain_id)
        if client is None:
            return Failure(ErrorKind.UNSUPPORTED_CHAIN, f"Unsupported chain {chain_id}")
        try:
            return await client.get_block_number()
        except (httpx.HTTPError, RPCError, ValueError) as e:
            logger.warning("eth_blockNumber failed on chain %s: %s", chain_id, e)
            return Failure(ErrorKind.PROVIDER_UNAVAILABLE, "Chain RPC unavailable", {"chain_id": chain_id})

    async def observe(self, chain_id: int, tx_hash: str) -> Union[ChainObservation, Failure]:
        """Fetch a mined transaction and how deep it is."""
        network = get_network(chain_id)
        client = self.client_for(chain_id)
        if network is None or client is None:
            return Failure(ErrorKind.UNSUPPORTED_CHAIN, f"Unsupported chain {chain_id}")

        try:
            tx = await client.get_transaction(tx_hash)
            if not tx:
                return Failure(ErrorKind.NOT_FOUND, "Transaction not found", {"tx_hash": tx_hash})
            if tx.get("blockNumber") is None:
                return Failure(ErrorKind.NOT_FOUND, "Transaction is pending", {"tx_hash": tx_hash})

            receipt = await client.get_transaction_receipt(tx_hash)
            if not receipt or receipt.get("blockNumber") is None:
                return Failure(ErrorKind.NOT_FOUND, "Transaction receipt not available", {"tx_hash": tx_hash})

            head = await client.get_block_number()
        except (httpx.HTTPError, RPCError, ValueError) as e:
            logger.warning("RPC lookup of %s on chain %s failed: %s", tx_hash, chain_id, e)
            return Failure(ErrorKind.PROVIDER_UNAVAILABLE, "Chain RPC unavailable", {"chain_id": chain_id})

        block_number = int(receipt["blockNumber"], 16)
        confirmations = max(0, head - block_number + 1)
        succeeded = _hex_int(receipt.get("status", "0x1")) == 1
        gas_price = _hex_int(receipt.get("effectiveGasPrice") or tx.get("gasPrice"))

        common = dict(
            # pre-EIP-155 transactions carry no chainId
            chain_id=_hex_int(tx.get("chainId")) or chain_id,
            tx_hash=tx_hash.lower(),
            block_number=block_number,
            head_block=head,
            confirmations=confirmations,
            succeeded=succeeded,
            gas_used=_hex_int(receipt.get("gasUsed")),
            gas_price=gas_price,
        )

        transfer = self._token_transfer(chain_id, tx, receipt)
        if transfer is not None:
            symbol, contract, sender, recipient, value = transfer
            return ChainObservation(
                from_address=sender,
                to_address=recipient,
                value=value,
                currency=symbol,
                is_native=False,
                token_contract=contract,
                **common,
            )

        return ChainObservation(
            from_address=checksum(tx["from"]),
            to_address=checksum(tx["to"]) if tx.get("to") else "",
            value=int(tx.get("value") or "0x0", 16),
            currency=network.native_symbol,
            is_native=True,
            **common,
        )

    def _token_transfer(self, chain_id: int, tx: Dict[str, Any], receipt: Dict[str, Any]):
        """Decode the ERC-20 Transfer log when the tx targets a known token."""
        target = tx.get("to")
        if not target:
            return None
        for symbol, token in tokens_for(chain_id, self._settings).items():
            if not same_address(target, token.address):
                continue
            for log in receipt.get("logs") or []:
                topics = log.get("topics") or []
                if (
                    len(topics) == 3
                    and topics[0].lower() == TRANSFER_TOPIC
                    and same_address(log.get("address"), token.address)
                ):
                    return (
                        symbol,
                        checksum(token.address),
                        _topic_address(topics[1]),
                        _topic_address(topics[2]),
                        int(log.get("data") or "0x0", 16),
                    )
        return None

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
