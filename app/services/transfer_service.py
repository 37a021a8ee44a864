"""
Transfer Service - outbound token transfers through the custody signer
"""
import logging
from decimal import Decimal
from typing import Optional

import httpx

import config
from core.ports.chain import TransferFailed

logger = logging.getLogger(__name__)

__all__ = ["HttpTransferGateway", "TransferFailed"]


class HttpTransferGateway:
    """Asks the signer service to send tokens and waits for its transaction hash.

    Only a definite refusal or an unreachable signer maps to TransferFailed.
    A timeout after the request was sent is also reported as a failure; the
    signer deduplicates on ``reference`` so a retried reservation cannot pay
    twice.
    """

    def __init__(
        self,
        *,
        base_url: str = config.TRANSFER_SERVICE_URL,
        token: str = config.TRANSFER_SERVICE_TOKEN,
        token_address: str = config.DP_TOKEN,
        timeout: float = config.TRANSFER_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.token_address = token_address
        self.timeout = timeout
        self._client = client

    async def _post(self, client: httpx.AsyncClient, payload: dict) -> dict:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        response = await client.post(f"{self.base_url}/transfers", json=payload, headers=headers)
        response.raise_for_status()
        return response.json()

    async def transfer(self, *, to_address: str, amount: Decimal, reference: str) -> str:
        if not self.base_url:
            raise TransferFailed("Transfer service is not configured")

        payload = {
            "token": self.token_address,
            "to": to_address,
            "amount": str(amount),
            "reference": reference,
        }
        logger.info(f"[Transfer] sending {amount} to {to_address} (ref {reference})")
        try:
            if self._client is not None:
                body = await self._post(self._client, payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    body = await self._post(client, payload)
        except httpx.TimeoutException:
            raise TransferFailed("Timeout waiting for the transfer service")
        except httpx.HTTPStatusError as e:
            raise TransferFailed(f"Transfer service returned error: {e.response.status_code}")
        except (httpx.RequestError, ValueError) as e:
            raise TransferFailed(f"Failed to reach the transfer service: {e}")

        tx_hash = body.get("tx_hash")
        if not body.get("success") or not tx_hash:
            raise TransferFailed(body.get("error") or "Transfer was not sent")
        logger.info(f"[Transfer] sent {amount} to {to_address}: {tx_hash}")
        return tx_hash
