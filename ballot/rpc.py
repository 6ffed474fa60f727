"""
Chain RPC Client
Thin async wrapper over the node's JSON-RPC ``query`` method.

Only read-only ``call_function`` queries go through here; anything signed
is submitted by the remote signer.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any

import httpx

from ballot.errors import RpcError

logger = logging.getLogger(__name__)


def encode_args(args: dict[str, Any]) -> str:
    """Base64 of the compact JSON encoding of call arguments."""
    return base64.b64encode(json.dumps(args).encode()).decode()


def decode_result(raw: list[int] | None) -> str | None:
    """The node returns view-call results as a list of byte values."""
    if not raw:
        return None
    return bytes(raw).decode("utf-8")


class ChainRpcClient:
    """
    Client for read-only contract queries.

    ``query`` returns the decoded UTF-8 payload of the view call, or None
    when the contract returned an empty result.
    """

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.rpc_url = rpc_url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def query(
        self,
        contract_id: str,
        method_name: str,
        args: dict[str, Any],
        block_id: int | None = None,
        request_id: str = "1",
    ) -> str | None:
        """Run a view call against *contract_id*.

        Args:
            contract_id: Account the contract is deployed on
            method_name: View method to call
            args: JSON-serialisable call arguments
            block_id: Exact block height to read at; finality "final" if None
            request_id: JSON-RPC id (shows up in node logs)

        Raises RpcError on transport failure, non-2xx status or JSON-RPC error.
        """
        params: dict[str, Any] = {
            "request_type": "call_function",
            "account_id": contract_id,
            "method_name": method_name,
            "args_base64": encode_args(args),
        }
        if block_id is None:
            params["finality"] = "final"
        else:
            params["block_id"] = block_id

        payload = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": "query",
            "params": params,
        }

        try:
            resp = await self._client.post(self.rpc_url, json=payload)
        except httpx.HTTPError as exc:
            raise RpcError(f"RPC network error calling {method_name}: {exc}") from exc

        if resp.status_code >= 400:
            raise RpcError(f"RPC request failed: {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as exc:
            raise RpcError(f"RPC returned non-JSON body for {method_name}") from exc

        if body.get("error"):
            error = body["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            data = error.get("data") if isinstance(error, dict) else None
            detail = f"{message}: {data}" if data else message
            raise RpcError(f"RPC error: {detail}")

        result = body.get("result") or {}
        if result.get("error"):
            # Contract panics come back inside an otherwise successful response
            raise RpcError(f"Contract error in {method_name}: {result['error']}")
        return decode_result(result.get("result"))

    async def aclose(self) -> None:
        await self._client.aclose()
