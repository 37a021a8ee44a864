"""
Deposit Verifier - confirms a token deposit over the chain's JSON-RPC API
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

import config
from core.ports.chain import DepositVerification

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
AMOUNT_TOLERANCE = Decimal("0.000001")


class RpcError(Exception):
    pass


def _topic_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


class RpcDepositVerifier:
    """Verifies that ``tx_hash`` moved DP tokens from the user to the platform receiver.

    The receipt must be successful, have at least ``required_confirmations``
    blocks on top of it, and carry a Transfer log from the token contract.
    """

    def __init__(
        self,
        *,
        rpc_url: str = config.RPC_URL,
        token_address: str = config.DP_TOKEN,
        receiver: str = config.PLATFORM_RECEIVER,
        required_confirmations: int = config.REQUIRED_CONFIRMATIONS,
        token_decimals: int = config.TOKEN_DECIMALS,
        timeout: float = config.RPC_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self.token_address = token_address.lower()
        self.receiver = receiver.lower()
        self.required_confirmations = required_confirmations
        self.token_decimals = token_decimals
        self.timeout = timeout
        self._client = client
        self._request_id = 0

    async def _call(self, client: httpx.AsyncClient, method: str, params: list) -> Any:
        self._request_id += 1
        response = await client.post(
            self.rpc_url,
            json={"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params},
        )
        response.raise_for_status()
        body = response.json()
        if body.get("error"):
            raise RpcError(f"{method} failed: {body['error']}")
        return body.get("result")

    async def verify(
        self, tx_hash: str, address: str, expected_amount: Optional[Decimal] = None
    ) -> DepositVerification:
        logger.info(f"[Deposit verify] tx={tx_hash}, address={address}, expected={expected_amount}")
        if not self.receiver:
            return DepositVerification(error="Platform receiver address is not configured")
        try:
            if self._client is not None:
                return await self._verify(self._client, tx_hash, address, expected_amount)
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await self._verify(client, tx_hash, address, expected_amount)
        except httpx.TimeoutException:
            logger.error(f"[Deposit verify] RPC timeout for {tx_hash}")
            return DepositVerification(error="Timeout connecting to chain RPC")
        except httpx.HTTPStatusError as e:
            logger.error(f"[Deposit verify] RPC returned {e.response.status_code} for {tx_hash}")
            return DepositVerification(error=f"Chain RPC returned error: {e.response.status_code}")
        except (httpx.RequestError, RpcError, ValueError) as e:
            logger.error(f"[Deposit verify] RPC failure for {tx_hash}: {e}")
            return DepositVerification(error=f"Chain RPC failure: {e}")

    async def _verify(
        self, client: httpx.AsyncClient, tx_hash: str, address: str, expected_amount: Optional[Decimal]
    ) -> DepositVerification:
        receipt = await self._call(client, "eth_getTransactionReceipt", [tx_hash])
        if not receipt:
            return DepositVerification(error="Transaction not found or not yet mined")
        if int(receipt.get("status", "0x0"), 16) != 1:
            return DepositVerification(error="Transaction execution failed")

        block_number = int(receipt["blockNumber"], 16)
        current_block = int(await self._call(client, "eth_blockNumber", []), 16)
        confirmations = current_block - block_number
        if confirmations < self.required_confirmations:
            return DepositVerification(
                pending=True,
                confirmations=max(0, confirmations),
                required_confirmations=self.required_confirmations,
                block_number=block_number,
            )

        transfer_log = next(
            (
                log for log in receipt.get("logs") or []
                if log.get("address", "").lower() == self.token_address
                and (log.get("topics") or [None])[0] == TRANSFER_TOPIC
            ),
            None,
        )
        if transfer_log is None:
            return DepositVerification(error="No DP token Transfer event found")

        sender = _topic_address(transfer_log["topics"][1])
        recipient = _topic_address(transfer_log["topics"][2])
        amount = Decimal(int(transfer_log["data"], 16)) / (Decimal(10) ** self.token_decimals)

        if sender != address.lower():
            return DepositVerification(error=f"Transfer sender does not match: {sender}")
        if recipient != self.receiver:
            return DepositVerification(error=f"Transfer recipient is not the platform: {recipient}")
        if expected_amount is not None and abs(amount - Decimal(expected_amount)) > AMOUNT_TOLERANCE:
            return DepositVerification(error=f"Amount mismatch: expected {expected_amount}, got {amount}")

        block: Dict[str, Any] = await self._call(client, "eth_getBlockByNumber", [receipt["blockNumber"], False]) or {}
        timestamp = int(block["timestamp"], 16) if block.get("timestamp") else None

        logger.info(f"[Deposit verify] confirmed tx={tx_hash}, amount={amount}, confirmations={confirmations}")
        return DepositVerification(
            confirmed=True,
            amount=amount,
            confirmations=confirmations,
            required_confirmations=self.required_confirmations,
            block_number=block_number,
            timestamp=timestamp,
            details={"from": sender, "to": recipient, "gas_used": receipt.get("gasUsed")},
        )
