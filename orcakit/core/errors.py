"""Error taxonomy for pool reads, quoting, execution and analytics."""

from typing import Any


class OrcaError(Exception):
    """Base class for every error raised by orcakit."""


class OutOfRange(OrcaError):
    """Tick or price outside the valid domain."""


class InvalidRange(OrcaError):
    """Malformed tick bounds (reversed, equal or misaligned)."""


class ZeroOutput(OrcaError):
    """Trade or liquidity change rounds to nothing at the current price."""


class InsufficientLiquidity(OrcaError):
    """The pool cannot satisfy the requested input."""


class InsufficientSamples(OrcaError):
    """Analytics requested before enough samples were recorded."""

    def __init__(self, pool_address: str, required: int, available: int) -> None:
        self.pool_address = pool_address
        self.required = required
        self.available = available
        super().__init__(
            f"Pool {pool_address} has {available} samples, {required} required"
        )


class SlippageExceeded(OrcaError):
    """Retry budget exhausted without a quote that held on-chain."""

    def __init__(self, attempts: int, last_error: Exception | None = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Slippage tolerance exceeded after {attempts} attempts")


class UnsupportedPoolVariant(OrcaError):
    """Operation is not available for this pool variant."""


class NotFound(OrcaError):
    """Missing account or pool."""


class AccountNotFound(NotFound):
    """Account does not exist on the ledger."""

    def __init__(self, address: str) -> None:
        self.address = address
        super().__init__(f"Account not found: {address}")


class PoolNotFound(NotFound):
    """No pool trades the requested token pair."""

    def __init__(self, mint_a: str, mint_b: str) -> None:
        self.mint_a = mint_a
        self.mint_b = mint_b
        super().__init__(f"No pool found for token pair {mint_a}/{mint_b}")


class TransportError(OrcaError):
    """Opaque failure from the transport collaborator, passed through as-is."""


class RpcError(TransportError):
    """JSON-RPC error returned by a Solana node."""

    def __init__(self, code: int, message: str, data: Any | None = None) -> None:
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"RPC Error {code}: {message}")


# Program error codes that mean the slippage bound was violated.
# Whirlpool: TokenMaxExceeded, TokenMinSubceeded, AmountOutBelowMinimum,
# AmountInAboveMaximum. Token-swap: ExceededSlippage.
STALE_PRICE_ERROR_CODES = frozenset({6017, 6018, 6036, 6037, 16})


class RejectionReason:
    """Why the ledger (or its simulator) refused a transaction."""

    def __init__(
        self,
        message: str,
        code: int | None = None,
        logs: list[str] | None = None,
        simulated: bool = False,
    ) -> None:
        self.message = message
        self.code = code
        self.logs = logs or []
        self.simulated = simulated

    @property
    def stale_price(self) -> bool:
        """Whether the rejection is a slippage-bound violation."""
        return self.code in STALE_PRICE_ERROR_CODES

    @classmethod
    def from_transaction_error(
        cls, err: Any, logs: list[str] | None = None, simulated: bool = False
    ) -> "RejectionReason":
        """Build a reason from a Solana `TransactionError` JSON value.

        Custom program errors arrive as
        ``{"InstructionError": [index, {"Custom": code}]}``.
        """
        code = None
        if isinstance(err, dict) and "InstructionError" in err:
            detail = err["InstructionError"]
            if isinstance(detail, list) and len(detail) == 2:
                inner = detail[1]
                if isinstance(inner, dict) and "Custom" in inner:
                    code = int(inner["Custom"])
        return cls(message=str(err), code=code, logs=logs, simulated=simulated)

    def __repr__(self) -> str:
        return (
            f"RejectionReason(message={self.message!r}, code={self.code}, "
            f"simulated={self.simulated})"
        )


class TransactionRejected(OrcaError):
    """Transaction refused by preflight simulation or on-chain execution."""

    def __init__(self, reason: RejectionReason) -> None:
        self.reason = reason
        stage = "simulation" if reason.simulated else "execution"
        super().__init__(f"Transaction rejected during {stage}: {reason.message}")

    @property
    def stale_price(self) -> bool:
        return self.reason.stale_price
