"""
Remote Signer
Client for the signing service that holds the voting identity's key.

``SignerClient`` speaks the service's HTTP API directly and must never be
used on its own from pipeline code. ``QueuedSigner`` is the only entry
point: it pushes every request through the SignerCallQueue so the signer
sees one request at a time.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ballot.call_queue import QueueStatus, SignerCallQueue
from ballot.errors import SignerError

logger = logging.getLogger(__name__)


class SignerClient:
    """Raw HTTP client for the signer's ``/api/agent/<method>`` endpoints."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def request(self, method: str, args: dict[str, Any] | None = None) -> Any:
        try:
            resp = await self._client.post(
                f"{self.base_url}/api/agent/{method}",
                json=args or {},
            )
        except httpx.TimeoutException as exc:
            raise SignerError(f"Signer timeout calling {method}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise SignerError(f"Signer connection error calling {method}: {exc}") from exc

        if resp.status_code >= 400:
            raise SignerError(
                f"Signer {method} failed: {resp.status_code} - {resp.text[:200]}"
            )

        try:
            return resp.json()
        except ValueError:
            # functionCall may answer with a bare transaction hash
            return resp.text

    async def get_account_id(self) -> str:
        body = await self.request("getAccountId")
        account_id = body.get("accountId") if isinstance(body, dict) else None
        if not account_id:
            raise SignerError(f"Signer returned no account id: {body!r}")
        return account_id

    async def aclose(self) -> None:
        await self._client.aclose()


class QueuedSigner:
    """
    Queue-routed facade over the remote signer.

    Account-id lookups, balance reads, signer-side view calls and contract
    calls all share one queue.
    """

    def __init__(self, client: SignerClient, queue: SignerCallQueue):
        self.client = client
        self.queue = queue

    async def account_id(self) -> str:
        return await self.queue.enqueue(self.client.get_account_id)

    async def call(self, method: str, args: dict[str, Any] | None = None) -> Any:
        return await self.queue.enqueue(lambda: self.client.request(method, args))

    async def function_call(
        self,
        contract_id: str,
        method_name: str,
        args: dict[str, Any],
        gas: str,
        deposit: str,
    ) -> Any:
        """Sign and submit a contract call. Error payloads raise SignerError."""
        logger.info("Submitting %s on %s through signer queue", method_name, contract_id)
        result = await self.call(
            "functionCall",
            {
                "contractId": contract_id,
                "methodName": method_name,
                "args": args,
                "gas": gas,
                "attachedDeposit": deposit,
            },
        )
        if isinstance(result, dict) and result.get("error"):
            raise SignerError(str(result["error"]))
        return result

    async def view(self, contract_id: str, method_name: str, args: dict[str, Any]) -> Any:
        return await self.call(
            "view",
            {"contractId": contract_id, "methodName": method_name, "args": args},
        )

    async def balance(self) -> Any:
        return await self.call("getBalance")

    def status(self) -> QueueStatus:
        return self.queue.status()
