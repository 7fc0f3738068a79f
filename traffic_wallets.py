"""Wallet pool shared by all traffic instances.

Each instance owns exactly one wallet slot, identified by its index. The pool
is built once at startup and never mutated afterwards, so runners read it
concurrently without locking.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, Sequence, Tuple

from eth_keys import keys
from eth_keys.exceptions import ValidationError
from eth_utils import decode_hex, is_hex_address, to_checksum_address

from traffic_errors import ConfigurationError, KeyDecodeError

LOGGER = logging.getLogger("traffic_generator.wallets")


@dataclass(frozen=True)
class KeyPair:
    """Signing key, its public key and the declared address of one wallet."""

    private_key: keys.PrivateKey
    public_key: keys.PublicKey
    address: str

    @classmethod
    def from_hex(cls, private_key_hex: str, address_hex: str) -> "KeyPair":
        """Decode a hex private key and pair it with the declared address.

        The declared address is kept for receiving and balance lookups even when
        it does not match the address derived from the key; see
        :attr:`signer_address`.
        """

        try:
            private_key = keys.PrivateKey(decode_hex(private_key_hex.strip()))
        except (ValueError, TypeError, ValidationError) as exc:
            # never echo the key itself
            raise KeyDecodeError(f"cannot parse private key: {exc.__class__.__name__}") from None

        if not is_hex_address(address_hex.strip()):
            raise ConfigurationError(f"invalid signer address {address_hex!r}")
        address = to_checksum_address(address_hex.strip())

        public_key = private_key.public_key
        derived = public_key.to_checksum_address()
        if derived != address:
            LOGGER.warning("Declared address %s does not match key address %s; nonces follow the key", address, derived)

        return cls(private_key=private_key, public_key=public_key, address=address)

    @property
    def signer_address(self) -> str:
        """Address derived from the key; the account whose nonce the transactions consume."""

        return self.public_key.to_checksum_address()

    def __repr__(self) -> str:
        return f"KeyPair(address={self.address!r})"


class WalletPool:
    """Immutable, index-addressed collection of key pairs."""

    def __init__(self, wallets: Sequence[KeyPair]) -> None:
        if not wallets:
            raise ConfigurationError("wallet pool needs at least one key pair")
        self._wallets: Tuple[KeyPair, ...] = tuple(wallets)

    @classmethod
    def from_hex(cls, private_keys: Sequence[str], addresses: Sequence[str]) -> "WalletPool":
        if len(private_keys) != len(addresses):
            raise ConfigurationError(
                f"got {len(private_keys)} private keys but {len(addresses)} addresses"
            )
        pool = cls([KeyPair.from_hex(key, addr) for key, addr in zip(private_keys, addresses)])
        LOGGER.info("Loaded %d wallets", len(pool))
        return pool

    def __len__(self) -> int:
        return len(self._wallets)

    def __getitem__(self, index: int) -> KeyPair:
        return self._wallets[index]

    def __iter__(self) -> Iterator[KeyPair]:
        return iter(self._wallets)

    @property
    def addresses(self) -> Tuple[str, ...]:
        return tuple(wallet.address for wallet in self._wallets)

    def receiver_index(self, sender_index: int) -> int:
        """Every instance sends to the next one in pool order, wrapping around."""

        return (sender_index + 1) % len(self._wallets)
