"""Transaction signer backed by in-memory solders keypairs."""

import structlog
from solders.hash import Hash
from solders.keypair import Keypair
from solders.transaction import Transaction

from ..core.transactions import SignedTransaction, UnsignedTransaction

logger = structlog.get_logger(__name__)


class KeypairSigner:
    """Signs transactions with the caller's keypair plus any extra signers.

    Operations such as opening a position need a freshly generated mint
    keypair to co-sign; those travel on the unsigned transaction.
    """

    def sign(self, unsigned: UnsignedTransaction, key: Keypair) -> SignedTransaction:
        """Sign a transaction and return serialized wire bytes.

        Args:
            unsigned: Transaction with a recent blockhash attached
            key: Fee payer / authority keypair

        Returns:
            SignedTransaction ready for submission

        Raises:
            ValueError: If the key is not the payer or no blockhash is attached
        """
        if key.pubkey() != unsigned.payer:
            raise ValueError(
                f"Signer {key.pubkey()} does not match payer {unsigned.payer}"
            )

        message = unsigned.message()
        signers = [key, *unsigned.extra_signers]
        transaction = Transaction(
            signers, message, Hash.from_string(unsigned.recent_blockhash)
        )
        signature = str(transaction.signatures[0])

        logger.debug(
            "Transaction signed",
            kind=unsigned.kind,
            signature=signature[:8] + "...",
            signers=len(signers),
        )

        return SignedTransaction(
            raw=bytes(transaction), signature=signature, kind=unsigned.kind
        )
