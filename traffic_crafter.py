"""Builds and signs the padded transfer transactions sent by each instance."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Any, Callable, Dict

from eth_account import Account
from eth_utils import ValidationError

from traffic_chain import ChainClient
from traffic_errors import ChainIdFetchError, NonceFetchError, RpcError, SigningError
from traffic_wallets import KeyPair

LOGGER = logging.getLogger("traffic_generator.crafter")

# Fixed transaction economics, not derived from network conditions
TRANSFER_VALUE = 1000  # wei
GAS_LIMIT = 3_000_000
GAS_PRICE = 30_000_000_000  # 30 gwei


@dataclass(frozen=True)
class Transfer:
    """Unsigned value transfer carrying an opaque data payload."""

    nonce: int
    to: str
    value: int
    gas: int
    gas_price: int
    data: bytes

    def as_dict(self, chain_id: int) -> Dict[str, Any]:
        return {
            "nonce": self.nonce,
            "to": self.to,
            "value": self.value,
            "gas": self.gas,
            "gasPrice": self.gas_price,
            "data": self.data,
            "chainId": chain_id,
        }


@dataclass(frozen=True)
class SignedTransfer:
    transfer: Transfer
    chain_id: int
    raw: bytes
    hash: bytes

    @property
    def size(self) -> int:
        """Length of the RLP-serialized signed transaction in bytes."""

        return len(self.raw)


class TransactionCrafter:
    """Turns a (sender, receiver) pair into a signed, ready-to-send transfer.

    Only two read calls reach the chain client per craft (pending nonce and
    chain id); nothing is submitted here.
    """

    def __init__(
        self,
        client: ChainClient,
        pad_size: int,
        random_bytes: Callable[[int], bytes] = secrets.token_bytes,
    ) -> None:
        self.client = client
        self.pad_size = pad_size
        self._random_bytes = random_bytes

    async def craft(self, sender: KeyPair, receiver_address: str) -> SignedTransfer:
        try:
            nonce = await self.client.pending_nonce(sender.signer_address)
        except RpcError as exc:
            raise NonceFetchError(f"nonce lookup for {sender.signer_address} failed: {exc}") from exc

        transfer = Transfer(
            nonce=nonce,
            to=receiver_address,
            value=TRANSFER_VALUE,
            gas=GAS_LIMIT,
            gas_price=GAS_PRICE,
            data=self._random_bytes(self.pad_size),
        )

        try:
            chain_id = await self.client.chain_id()
        except RpcError as exc:
            raise ChainIdFetchError(f"chain id lookup failed: {exc}") from exc

        try:
            signed = Account.sign_transaction(transfer.as_dict(chain_id), sender.private_key)
        except (TypeError, ValueError, ValidationError) as exc:
            raise SigningError(f"signing transfer from {sender.address} failed: {exc}") from exc

        result = SignedTransfer(
            transfer=transfer,
            chain_id=chain_id,
            raw=bytes(signed.raw_transaction),
            hash=bytes(signed.hash),
        )
        LOGGER.info("Signed tx from %s nonce=%d size=%d bytes after rlp encoding", sender.address, nonce, result.size)
        return result
