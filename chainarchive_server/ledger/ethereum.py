"""
Ethereum ledger client built on web3.py.

This module provides the production ledger backend. It reads the supply
chain contract through ``AsyncWeb3`` and listens for ``ReceivedByCustomer``
logs over a websocket subscription.

Invariants:
    - Reads go through the contract's paginated fetch functions only
    - Raw tuples are returned untouched (see archive.layout for mapping)
    - Completion logs are decoded with the contract ABI, never by hand
    - Any web3/transport failure is re-raised as a LedgerError subclass
    - A log that cannot be decoded is logged and skipped; the subscription survives

How to change safely:
    - Test against a local node (ganache/anvil) before deploying
    - Contract function names live in the constants below only
    - Websocket is required for subscriptions; HTTP works for reads only
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from typing import Any

from eth_utils import event_abi_to_log_topic
from web3 import AsyncHTTPProvider, AsyncWeb3, WebSocketProvider

from .base import (
    CompletionEvent,
    LedgerConnectionError,
    LedgerError,
)

logger = logging.getLogger(__name__)

CURRENT_VIEW = "product"
HISTORY_VIEW = "history"

PART_FUNCTIONS = {
    1: "fetchProductPart1",
    2: "fetchProductPart2",
    3: "fetchProductPart3",
}
HISTORY_LENGTH_FUNCTION = "fetchProductHistoryLength"
STATE_FUNCTION = "fetchProductState"
COMPLETION_EVENT = "ReceivedByCustomer"


def load_contract_abi(artifact_path: str) -> list[dict[str, Any]]:
    """Load a contract ABI from a Truffle/Hardhat artifact or a bare ABI file.

    Raises:
        LedgerError: If the file is missing or has no ABI
    """
    path = Path(artifact_path)
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise LedgerError(f"Cannot load contract artifact {path}: {e}") from e

    abi = data.get("abi") if isinstance(data, dict) else data
    if not isinstance(abi, list):
        raise LedgerError(f"Contract artifact {path} has no ABI")
    return abi


class Web3Subscription:
    """Websocket log subscription for completion events."""

    def __init__(self, client: Web3LedgerClient, subscription_id: str) -> None:
        self.subscription_id = subscription_id
        self._client = client
        self._closed = False

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._client._w3.eth.unsubscribe(self.subscription_id)
        except Exception as e:
            logger.warning(f"Error unsubscribing {self.subscription_id}: {e}")

    def _decode(self, event: Any, log: Any) -> CompletionEvent | None:
        """Decode one completion log; a bad log is skipped, not fatal."""
        try:
            decoded = event.process_log(log)
            return CompletionEvent(
                uid=int(decoded["args"]["uid"]),
                block_number=int(decoded["blockNumber"]),
                transaction_hash=AsyncWeb3.to_hex(decoded["transactionHash"]),
            )
        except Exception as e:
            logger.error(
                f"Skipping undecodable {COMPLETION_EVENT} log: {e}",
                extra={"subscription_id": self.subscription_id, "log": repr(log)},
            )
            return None

    async def __aiter__(self) -> AsyncIterator[CompletionEvent]:
        w3 = self._client._w3
        event = self._client._contract.events[COMPLETION_EVENT]()
        try:
            async for message in w3.socket.process_subscriptions():
                if self._closed:
                    return
                if message.get("subscription") != self.subscription_id:
                    continue
                completion = self._decode(event, message.get("result"))
                if completion is not None:
                    yield completion
        except LedgerError:
            raise
        except Exception as e:
            if self._closed:
                return
            raise LedgerConnectionError(f"Completion subscription failed: {e}") from e


class Web3LedgerClient:
    """web3.py implementation of the LedgerClient protocol.

    Attributes:
        config: LedgerConfig instance

    Example:
        >>> client = Web3LedgerClient(LedgerConfig.from_env())
        >>> await client.connect()
        >>> state = await client.read_current_state(42)
    """

    def __init__(self, config: Any) -> None:
        self.config = config
        self._abi = load_contract_abi(config.contract_artifact)
        self._w3: AsyncWeb3 | None = None
        self._contract: Any = None
        self._connected = False

    @property
    def contract_address(self) -> str:
        return self.config.contract_address

    @property
    def is_connected(self) -> bool:
        return self._connected and self._w3 is not None

    @property
    def uses_websocket(self) -> bool:
        return self.config.rpc_url.startswith("ws")

    async def connect(self) -> None:
        """Connect to the ledger node and bind the contract.

        Raises:
            LedgerConnectionError: If connection fails
        """
        if self._connected:
            return

        try:
            if self.uses_websocket:
                self._w3 = AsyncWeb3(WebSocketProvider(self.config.rpc_url))
                await self._w3.provider.connect()
            else:
                self._w3 = AsyncWeb3(AsyncHTTPProvider(self.config.rpc_url))

            if not await self._w3.is_connected():
                raise LedgerConnectionError(f"Node at {self.config.rpc_url} is not reachable")

            self._contract = self._w3.eth.contract(
                address=AsyncWeb3.to_checksum_address(self.config.contract_address),
                abi=self._abi,
            )
            self._connected = True

            logger.info(
                "Connected to ledger",
                extra={
                    "rpc_url": self.config.rpc_url,
                    "contract": self.config.contract_address,
                },
            )

        except LedgerConnectionError:
            self._connected = False
            raise
        except Exception as e:
            self._connected = False
            raise LedgerConnectionError(f"Failed to connect to ledger: {e}") from e

    async def close(self) -> None:
        if self._w3 is not None and self.uses_websocket:
            try:
                await self._w3.provider.disconnect()
            except Exception as e:
                logger.warning(f"Error closing ledger connection: {e}")
        self._w3 = None
        self._contract = None
        self._connected = False
        logger.info("Ledger connection closed")

    async def _call(self, function: str, *args: Any) -> Any:
        if not self.is_connected:
            raise LedgerConnectionError("Not connected")
        try:
            return await self._contract.functions[function](*args).call()
        except Exception as e:
            raise LedgerError(f"{function}{args} failed: {e}") from e

    async def read_current_part(self, uid: int, part: int) -> Sequence[Any]:
        return await self._call(PART_FUNCTIONS[part], uid, CURRENT_VIEW, 0)

    async def read_history_length(self, uid: int) -> int:
        return int(await self._call(HISTORY_LENGTH_FUNCTION, uid))

    async def read_history_part(self, uid: int, index: int, part: int) -> Sequence[Any]:
        return await self._call(PART_FUNCTIONS[part], uid, HISTORY_VIEW, index)

    async def read_current_state(self, uid: int) -> int:
        return int(await self._call(STATE_FUNCTION, uid))

    async def subscribe_completions(self) -> Web3Subscription:
        """Subscribe to ``ReceivedByCustomer`` logs of the bound contract.

        Raises:
            LedgerConnectionError: If not connected over a websocket
        """
        if not self.is_connected:
            raise LedgerConnectionError("Not connected")
        if not self.uses_websocket:
            raise LedgerConnectionError("Completion subscriptions require a ws:// or wss:// RPC URL")

        event_abi = next(
            (e for e in self._abi if e.get("type") == "event" and e.get("name") == COMPLETION_EVENT),
            None,
        )
        if event_abi is None:
            raise LedgerError(f"Contract ABI has no {COMPLETION_EVENT} event")

        topic = AsyncWeb3.to_hex(event_abi_to_log_topic(event_abi))
        try:
            subscription_id = await self._w3.eth.subscribe(
                "logs",
                {"address": self._contract.address, "topics": [topic]},
            )
        except Exception as e:
            raise LedgerConnectionError(f"Failed to subscribe to {COMPLETION_EVENT}: {e}") from e

        return Web3Subscription(self, str(subscription_id))
