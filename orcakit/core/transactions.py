"""Unsigned and signed transaction containers passed between engine, signer and transport."""

import base64
from dataclasses import dataclass, field, replace
from typing import Any

from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey


@dataclass(frozen=True)
class UnsignedTransaction:
    """Instructions ready for signing once a recent blockhash is attached."""

    kind: str
    payer: Pubkey
    instructions: tuple[Instruction, ...]
    extra_signers: tuple[Keypair, ...] = ()
    recent_blockhash: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def with_blockhash(self, blockhash: str) -> "UnsignedTransaction":
        return replace(self, recent_blockhash=blockhash)

    def message(self) -> Message:
        """Compile the transaction message.

        Raises:
            ValueError: If no recent blockhash has been attached
        """
        if self.recent_blockhash is None:
            raise ValueError("Recent blockhash not set")
        return Message.new_with_blockhash(
            list(self.instructions),
            self.payer,
            Hash.from_string(self.recent_blockhash),
        )


@dataclass(frozen=True)
class SignedTransaction:
    """Serialized, fully signed transaction."""

    raw: bytes
    signature: str
    kind: str = ""

    def to_base64(self) -> str:
        return base64.b64encode(self.raw).decode("utf-8")
