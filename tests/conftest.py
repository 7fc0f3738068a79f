import asyncio
from collections import Counter, defaultdict
from typing import Dict, List, Optional, Set, Tuple

import pytest
import rlp
from eth_account import Account
from eth_utils import keccak, to_checksum_address

from traffic_core import TrafficConfig
from traffic_errors import RpcError

# Well-known development accounts (anvil / hardhat mnemonic)
PRIVATE_KEYS = [
    "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80",
    "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d",
    "0x5de4111afa1a4b94908f83103eb1f1706367c2e68ca870fc3fb9a804cdab365a",
]
ADDRESSES = [
    "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266",
    "0x70997970C51812dc3A010C7d01b50e0d17dc79C8",
    "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC",
]

CHAIN_ID = 1337
INITIAL_BALANCE = 10**18


def decode_legacy(raw: bytes) -> Dict[str, object]:
    """Split a signed legacy transaction into its fields."""

    nonce, gas_price, gas, to, value, data, v, r, s = rlp.decode(raw)
    return {
        "nonce": int.from_bytes(nonce, "big"),
        "gas_price": int.from_bytes(gas_price, "big"),
        "gas": int.from_bytes(gas, "big"),
        "to": to_checksum_address(to),
        "value": int.from_bytes(value, "big"),
        "data": bytes(data),
        "v": int.from_bytes(v, "big"),
    }


class FakeChainClient:
    """In-memory stand-in for ChainClient that behaves like a permissive node."""

    def __init__(self, chain_id: int = CHAIN_ID) -> None:
        self.chain_id_value = chain_id
        self.nonces: Dict[str, int] = defaultdict(int)
        self.balances: Dict[str, int] = defaultdict(lambda: INITIAL_BALANCE)
        self.sent: List[Tuple[str, bytes]] = []
        self.calls: Counter = Counter()
        self.failing: Set[str] = set()
        self.send_gate: Optional[asyncio.Event] = None
        self.opened = False
        self.closed = False

    async def open(self) -> None:
        self.opened = True

    async def close(self) -> None:
        self.closed = True

    def _check(self, method: str) -> None:
        self.calls[method] += 1
        if method in self.failing:
            raise RpcError(method, "injected failure")

    async def pending_nonce(self, address: str) -> int:
        self._check("eth_getTransactionCount")
        return self.nonces[address]

    async def chain_id(self) -> int:
        self._check("eth_chainId")
        return self.chain_id_value

    async def balance(self, address: str) -> int:
        self._check("eth_getBalance")
        return self.balances[address]

    async def send_raw_transaction(self, raw: bytes) -> str:
        self._check("eth_sendRawTransaction")
        if self.send_gate is not None:
            await self.send_gate.wait()
        sender = Account.recover_transaction(raw)
        self.nonces[sender] += 1
        self.balances[sender] -= 1000
        self.sent.append((sender, raw))
        return "0x" + keccak(raw).hex()

    def sent_by(self, address: str) -> List[Dict[str, object]]:
        return [decode_legacy(raw) for sender, raw in self.sent if sender == address]


@pytest.fixture
def fake_client() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def make_config():
    def _make(instances: int = 2, **overrides) -> TrafficConfig:
        values = {
            "hostname": "localhost:8545",
            "num_instances": instances,
            "signer_private_keys": PRIVATE_KEYS[:instances],
            "addresses": ADDRESSES[:instances],
            "pad_size": 10,
            "request_interval": 0.05,
        }
        values.update(overrides)
        return TrafficConfig(**values)

    return _make
