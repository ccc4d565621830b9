"""Solana JSON-RPC transport for account reads and transaction submission."""

import asyncio
import base64
import time
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from ..core.errors import (
    AccountNotFound,
    RejectionReason,
    RpcError,
    TransactionRejected,
    TransportError,
)
from ..core.transactions import SignedTransaction

logger = structlog.get_logger(__name__)

# Node-side failures worth another attempt
RETRYABLE_RPC_CODES = {
    -32603,  # Internal error
    -32005,  # Node is unhealthy
    -32004,  # Slot was skipped
    429,  # Too many requests
}

# sendTransaction preflight failure; `data` carries the simulation result
PREFLIGHT_FAILURE_CODE = -32002


def _is_retryable_error(exception: BaseException) -> bool:
    """Check if an exception is retryable."""
    if isinstance(exception, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(exception, httpx.HTTPStatusError):
        status = exception.response.status_code
        return status == 429 or status >= 500
    if isinstance(exception, RpcError):
        return exception.code in RETRYABLE_RPC_CODES
    return False


def _decode_account_data(data: Any) -> bytes:
    """Decode `[payload, "base64"]` account data."""
    if isinstance(data, list) and len(data) == 2 and data[1] == "base64":
        return base64.b64decode(data[0])
    raise TransportError(f"Unexpected account data encoding: {data!r}")


class RpcTransport:
    """JSON-RPC client implementing the ledger transport protocol."""

    def __init__(
        self,
        rpc_url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        commitment: str = "confirmed",
        max_retries: int = 3,
        await_confirmation: bool = True,
        confirm_timeout: float = 60.0,
        confirm_poll_interval: float = 2.0,
        retry_wait: wait_base | None = None,
    ) -> None:
        """Initialize RpcTransport.

        Args:
            rpc_url: Solana RPC endpoint URL
            client: Optional httpx client (will create one if not provided)
            timeout: Request timeout in seconds
            commitment: Commitment level for reads and confirmation
            max_retries: Attempts per request on transient failures
            await_confirmation: Poll signature status after submitting
            confirm_timeout: Maximum time to wait for confirmation
            confirm_poll_interval: Time between status checks
            retry_wait: tenacity wait strategy between attempts
        """
        self.rpc_url = rpc_url
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.timeout = timeout
        self.commitment = commitment
        self.max_retries = max_retries
        self.await_confirmation = await_confirmation
        self.confirm_timeout = confirm_timeout
        self.confirm_poll_interval = confirm_poll_interval
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)
        self._request_id = 0
        logger.info("RpcTransport initialized", rpc_url=rpc_url, timeout=timeout)

    @classmethod
    def from_settings(cls, settings, client: httpx.AsyncClient | None = None):
        """Build a transport from ClientSettings."""
        return cls(
            rpc_url=settings.rpc_url,
            client=client,
            timeout=settings.request_timeout_seconds,
            commitment=settings.commitment,
            max_retries=settings.rpc_max_retries,
            await_confirmation=settings.await_confirmation,
            confirm_timeout=settings.confirm_timeout_seconds,
            confirm_poll_interval=settings.confirm_poll_interval_seconds,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    def _get_request_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        """Make a JSON-RPC request with retries.

        Raises:
            RpcError: For JSON-RPC errors
            TransportError: For HTTP and network failures and non-JSON replies
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=self.retry_wait,
            retry=retry_if_exception(_is_retryable_error),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._post(method, params)
        except httpx.HTTPError as e:
            raise TransportError(f"{method} failed: {e}") from e

    async def _post(self, method: str, params: list[Any]) -> Any:
        request_id = self._get_request_id()
        payload = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
            "params": params,
        }

        start_time = time.time()
        try:
            logger.debug("Making RPC request", method=method, request_id=request_id)

            response = await self.client.post(
                self.rpc_url,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
            try:
                data = response.json()
            except ValueError as e:
                raise TransportError(f"{method} returned a non-JSON body") from e

            logger.debug(
                "RPC request completed",
                method=method,
                request_id=request_id,
                duration=time.time() - start_time,
            )

            if "error" in data:
                error = data["error"]
                raise RpcError(
                    code=error.get("code", -1),
                    message=error.get("message", "Unknown RPC error"),
                    data=error.get("data"),
                )

            return data.get("result")

        except httpx.HTTPError as e:
            logger.warning(
                "RPC request failed",
                method=method,
                request_id=request_id,
                duration=time.time() - start_time,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

    async def fetch_account(self, address: str) -> bytes:
        """Fetch raw account data.

        Raises:
            AccountNotFound: If the account does not exist
        """
        result = await self._rpc(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": self.commitment}],
        )
        value = result.get("value") if result else None
        if value is None:
            raise AccountNotFound(address)
        return _decode_account_data(value["data"])

    async def get_program_accounts(
        self, program_id: str, filters: list[dict[str, Any]]
    ) -> list[tuple[str, bytes]]:
        """List program accounts matching `dataSize`/`memcmp` filters."""
        result = await self._rpc(
            "getProgramAccounts",
            [
                program_id,
                {
                    "encoding": "base64",
                    "commitment": self.commitment,
                    "filters": filters,
                },
            ],
        )
        accounts = result or []
        # Some nodes wrap the list in a context object
        if isinstance(accounts, dict):
            accounts = accounts.get("value", [])
        return [
            (item["pubkey"], _decode_account_data(item["account"]["data"]))
            for item in accounts
        ]

    async def get_token_accounts_by_owner(
        self, owner: str, program_id: str
    ) -> list[tuple[str, bytes]]:
        """List token accounts held by `owner` under a token program."""
        result = await self._rpc(
            "getTokenAccountsByOwner",
            [
                owner,
                {"programId": program_id},
                {"encoding": "base64", "commitment": self.commitment},
            ],
        )
        return [
            (item["pubkey"], _decode_account_data(item["account"]["data"]))
            for item in (result or {}).get("value", [])
        ]

    async def get_latest_blockhash(self) -> str:
        result = await self._rpc(
            "getLatestBlockhash", [{"commitment": self.commitment}]
        )
        blockhash = result["value"]["blockhash"]
        logger.debug(
            "Retrieved latest blockhash",
            blockhash=blockhash[:8] + "...",
            last_valid_block_height=result["value"].get("lastValidBlockHeight"),
        )
        return blockhash

    async def simulate_transaction(self, signed: SignedTransaction) -> None:
        """Simulate a signed transaction.

        Raises:
            TransactionRejected: If the simulation reports an error
        """
        result = await self._rpc(
            "simulateTransaction",
            [
                signed.to_base64(),
                {
                    "encoding": "base64",
                    "commitment": self.commitment,
                    "sigVerify": False,
                },
            ],
        )
        value = (result or {}).get("value") or {}
        if value.get("err") is not None:
            logs = value.get("logs") or []
            logger.warning(
                "Transaction simulation failed",
                kind=signed.kind,
                error=value["err"],
                logs=logs[-5:],
            )
            raise TransactionRejected(
                RejectionReason.from_transaction_error(
                    value["err"], logs=logs, simulated=True
                )
            )
        logger.info(
            "Transaction simulation successful",
            kind=signed.kind,
            compute_units=value.get("unitsConsumed"),
        )

    async def submit_transaction(self, signed: SignedTransaction) -> str:
        """Send a signed transaction and optionally wait for confirmation.

        Returns:
            Transaction signature

        Raises:
            TransactionRejected: If preflight or on-chain execution fails
            TransportError: On network failure or confirmation timeout
        """
        logger.info("Sending transaction", kind=signed.kind, tx_length=len(signed.raw))
        try:
            signature = await self._rpc(
                "sendTransaction",
                [
                    signed.to_base64(),
                    {
                        "encoding": "base64",
                        "skipPreflight": False,
                        "preflightCommitment": self.commitment,
                        "maxRetries": 0,
                    },
                ],
            )
        except RpcError as e:
            if e.code == PREFLIGHT_FAILURE_CODE and isinstance(e.data, dict):
                raise TransactionRejected(
                    RejectionReason.from_transaction_error(
                        e.data.get("err"), logs=e.data.get("logs"), simulated=True
                    )
                ) from e
            raise

        logger.info("Transaction sent", kind=signed.kind, signature=signature)

        if self.await_confirmation:
            await self.confirm_signature(signature)
        return signature

    async def confirm_signature(self, signature: str) -> dict[str, Any]:
        """Poll signature status until it reaches the configured commitment.

        Raises:
            TransactionRejected: If the transaction failed on-chain
            TransportError: If confirmation times out
        """
        start_time = datetime.now(timezone.utc)
        end_time = start_time.timestamp() + self.confirm_timeout

        while datetime.now(timezone.utc).timestamp() < end_time:
            result = await self._rpc(
                "getSignatureStatuses",
                [[signature], {"searchTransactionHistory": True}],
            )
            statuses = (result or {}).get("value") or [None]
            status_info = statuses[0]

            if status_info is not None:
                if status_info.get("err") is not None:
                    logger.error(
                        "Transaction failed",
                        signature=signature,
                        error=status_info["err"],
                    )
                    raise TransactionRejected(
                        RejectionReason.from_transaction_error(status_info["err"])
                    )
                if _reached_commitment(
                    status_info.get("confirmationStatus"), self.commitment
                ):
                    logger.info(
                        "Transaction confirmed",
                        signature=signature,
                        confirmation_status=status_info.get("confirmationStatus"),
                        slot=status_info.get("slot"),
                    )
                    return status_info

            await asyncio.sleep(self.confirm_poll_interval)

        logger.error(
            "Transaction confirmation timeout",
            signature=signature,
            timeout=self.confirm_timeout,
        )
        raise TransportError(
            f"Transaction confirmation timeout after {self.confirm_timeout}s: {signature}"
        )


_COMMITMENT_ORDER = {"processed": 0, "confirmed": 1, "finalized": 2}


def _reached_commitment(status: str | None, target: str) -> bool:
    if status is None:
        return False
    return _COMMITMENT_ORDER.get(status, -1) >= _COMMITMENT_ORDER.get(target, 1)
