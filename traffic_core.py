"""Traffic generator core module.

Runs one independent traffic instance per configured wallet. Every instance
ticks at a fixed interval and, on each tick, signs a padded transfer to the
next wallet in the pool, submits it to the RPC endpoint and logs the sender's
balance. A shared stop event, set from SIGINT/SIGTERM, winds all instances
down at their next tick boundary.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import math
import re
import signal
import time
from dataclasses import MISSING, dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import yaml

from traffic_chain import ChainClient, normalize_url
from traffic_crafter import SignedTransfer, TransactionCrafter
from traffic_errors import (
    BalanceQueryError,
    ConfigurationError,
    CraftError,
    RpcError,
    SubmissionError,
)
from traffic_wallets import WalletPool

LOGGER = logging.getLogger("traffic_generator")

ENV_PREFIX = "TRAFFIC_GENERATOR"

# config field -> environment variable suffix
ENV_VARS = {
    "hostname": "HOSTNAME",
    "num_instances": "NUM_INSTANCES",
    "request_interval": "REQUEST_INTERVAL",
    "signer_private_keys": "SIGNER_PRIVATE_KEYS_HEX",
    "addresses": "SIGNER_ADDRESSES",
    "timeout": "TIMEOUT",
    "pad_size": "PAD_SIZE",
}

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)"
_DURATION_RE = re.compile(rf"(?:{_DURATION_PART})+")


def parse_duration(value: Any) -> float:
    """Return a duration in seconds.

    Accepts plain numbers (seconds) and Go-style duration strings such as
    ``"500ms"``, ``"2s"`` or ``"1m30s"``.
    """

    if isinstance(value, bool):
        raise ConfigurationError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip()
        try:
            seconds = float(text)
        except ValueError:
            if not _DURATION_RE.fullmatch(text):
                raise ConfigurationError(f"invalid duration {value!r}") from None
            seconds = sum(
                float(amount) * _DURATION_UNITS[unit]
                for amount, unit in re.findall(_DURATION_PART, text)
            )
    else:
        raise ConfigurationError(f"invalid duration {value!r}")

    if not math.isfinite(seconds):
        raise ConfigurationError(f"invalid duration {value!r}")
    return seconds


def _parse_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _parse_list(name: str, value: Any) -> List[str]:
    """Accept a list of strings or one comma separated string."""

    if isinstance(value, str):
        items = [value]
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        raise ConfigurationError(f"{name} must be a list of strings, got {value!r}")

    result: List[str] = []
    for item in items:
        if not isinstance(item, str):
            raise ConfigurationError(f"{name} must be a list of strings, got {item!r}")
        result.extend(part.strip() for part in item.split(",") if part.strip())
    return result


@dataclass
class TrafficConfig:
    """Configuration holder for the traffic generator."""

    hostname: str
    num_instances: int
    signer_private_keys: List[str] = field(repr=False)
    addresses: List[str]
    pad_size: int
    request_interval: float = 2.0
    timeout: float = 10.0

    def __post_init__(self) -> None:
        if not isinstance(self.hostname, str) or not self.hostname.strip():
            raise ConfigurationError("hostname is required")
        self.num_instances = _parse_int("num_instances", self.num_instances)
        self.pad_size = _parse_int("pad_size", self.pad_size)
        self.request_interval = parse_duration(self.request_interval)
        self.timeout = parse_duration(self.timeout)
        self.signer_private_keys = _parse_list("signer_private_keys", self.signer_private_keys)
        self.addresses = _parse_list("addresses", self.addresses)

        if self.num_instances <= 0:
            raise ConfigurationError("num_instances must be a positive integer")
        if self.pad_size < 0:
            raise ConfigurationError("pad_size cannot be negative")
        if self.request_interval <= 0:
            raise ConfigurationError("request_interval must be a positive duration")
        if self.timeout <= 0:
            raise ConfigurationError("timeout must be a positive duration")

        # one wallet per instance, keys and addresses paired by position
        if not len(self.signer_private_keys) == len(self.addresses) == self.num_instances:
            raise ConfigurationError(
                f"expected {self.num_instances} signer private keys and addresses, "
                f"got {len(self.signer_private_keys)} keys and {len(self.addresses)} addresses"
            )

        self.rpc_url = normalize_url(self.hostname.strip())

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "TrafficConfig":
        """Build a config object from a plain dict (config file or environment)."""

        known = {f.name for f in fields(cls)}
        values = {key.replace("-", "_"): value for key, value in raw.items()}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigurationError(f"unknown configuration keys: {', '.join(unknown)}")
        missing = sorted(
            f.name
            for f in fields(cls)
            if f.name not in values and f.default is MISSING and f.default_factory is MISSING
        )
        if missing:
            raise ConfigurationError(f"missing required configuration: {', '.join(missing)}")
        return cls(**values)

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "TrafficConfig":
        return cls.from_dict(env_values(environ))


def env_values(environ: Mapping[str, str]) -> Dict[str, str]:
    """Collect the TRAFFIC_GENERATOR_* variables that are set."""

    values = {}
    for name, suffix in ENV_VARS.items():
        value = environ.get(f"{ENV_PREFIX}_{suffix}")
        if value is not None and value != "":
            values[name] = value
    return values


def load_config_file(path: Path) -> Dict[str, Any]:
    """Load a configuration file in YAML or JSON format."""

    suffix = path.suffix.lower()
    try:
        text = path.read_text()
    except OSError as exc:
        raise ConfigurationError(f"cannot read configuration file {path}: {exc}") from exc

    try:
        if suffix in {".yaml", ".yml"}:
            data = yaml.safe_load(text) or {}
        elif suffix == ".json":
            data = json.loads(text or "{}")
        else:
            raise ConfigurationError(f"Unsupported configuration file format: {suffix}")
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"cannot parse configuration file {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError(f"configuration file {path} must contain a mapping")
    return dict(data)


class RunnerState(enum.Enum):
    IDLE = "idle"
    WAITING = "waiting"
    SENDING = "sending"
    STOPPED = "stopped"


async def _wait_for_stop(stop_event: asyncio.Event, timeout: float) -> bool:
    """Wait up to ``timeout`` seconds for the stop event; return whether it fired."""

    if stop_event.is_set():
        return True
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=max(timeout, 0.0))
    except asyncio.TimeoutError:
        return False
    return True


class InstanceRunner:
    """One traffic instance: a recurring ticker bound to a single wallet slot."""

    def __init__(
        self,
        index: int,
        wallets: WalletPool,
        crafter: TransactionCrafter,
        client: ChainClient,
        interval: float,
    ) -> None:
        self.index = index
        self.wallets = wallets
        self.crafter = crafter
        self.client = client
        self.interval = interval
        self.state = RunnerState.IDLE
        self.ticks = 0
        self.submissions = 0
        self.failures = 0

    @property
    def receiver_index(self) -> int:
        return self.wallets.receiver_index(self.index)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Tick until the stop event is set.

        The stop event is only looked at between ticks: a tick that has started
        always runs to completion. Ticks missed because a send was slow are
        dropped rather than replayed.
        """

        loop = asyncio.get_running_loop()
        self.state = RunnerState.WAITING
        next_tick = loop.time() + self.interval
        LOGGER.debug("instance=%d started, sending to instance=%d", self.index, self.receiver_index)
        try:
            while not await _wait_for_stop(stop_event, next_tick - loop.time()):
                self.state = RunnerState.SENDING
                try:
                    await self.tick()
                except Exception:
                    self.failures += 1
                    LOGGER.exception("instance=%d unexpected error during tick", self.index)
                self.state = RunnerState.WAITING

                next_tick += self.interval
                now = loop.time()
                if next_tick <= now:
                    next_tick += (math.floor((now - next_tick) / self.interval) + 1) * self.interval
        finally:
            self.state = RunnerState.STOPPED
            LOGGER.info(
                "instance=%d stopped after ticks=%d submissions=%d failures=%d",
                self.index,
                self.ticks,
                self.submissions,
                self.failures,
            )

    async def tick(self) -> None:
        """Perform a single send cycle. Per-tick failures are logged, never raised."""

        sender = self.wallets[self.index]
        receiver = self.wallets[self.receiver_index]
        self.ticks += 1

        try:
            signed = await self.crafter.craft(sender, receiver.address)
        except CraftError as exc:
            self.failures += 1
            LOGGER.warning("instance=%d failed to craft a tx: %s", self.index, exc)
            return

        self.submissions += 1
        try:
            tx_hash = await self.submit(signed)
        except SubmissionError as exc:
            self.failures += 1
            LOGGER.warning("instance=%d failed to send tx: %s", self.index, exc)
            return
        LOGGER.info("instance=%d sent tx %s to %s", self.index, tx_hash, receiver.address)

        try:
            balance = await self.query_balance(sender.address)
        except BalanceQueryError as exc:
            self.failures += 1
            LOGGER.warning("instance=%d failed to query balance: %s", self.index, exc)
            return
        LOGGER.info("%s balance %d", sender.address, balance)

    async def submit(self, signed: SignedTransfer) -> str:
        try:
            return await self.client.send_raw_transaction(signed.raw)
        except RpcError as exc:
            raise SubmissionError(str(exc)) from exc

    async def query_balance(self, address: str) -> int:
        try:
            return await self.client.balance(address)
        except RpcError as exc:
            raise BalanceQueryError(str(exc)) from exc


class TrafficGenerator:
    """Supervises one InstanceRunner per configured instance."""

    def __init__(self, config: TrafficConfig, client: Optional[ChainClient] = None) -> None:
        self.config = config
        # startup-fatal: KeyDecodeError / ConfigurationError propagate
        self.wallets = WalletPool.from_hex(config.signer_private_keys, config.addresses)
        self._owns_client = client is None
        self.client = client if client is not None else ChainClient(config.rpc_url, config.timeout)
        self.crafter = TransactionCrafter(self.client, config.pad_size)
        self.runners: List[InstanceRunner] = []
        self._stop_event = asyncio.Event()

    async def run(self, duration: Optional[float] = None) -> None:
        """Run every instance until a signal, ``stop()`` or ``duration`` ends them."""

        self._stop_event.clear()
        if self._owns_client:
            await self.client.open()

        loop = asyncio.get_running_loop()
        installed = _install_signal_handlers(loop, self.stop)
        stop_timer = loop.call_later(duration, self.stop) if duration is not None else None

        self.runners = [
            InstanceRunner(index, self.wallets, self.crafter, self.client, self.config.request_interval)
            for index in range(self.config.num_instances)
        ]
        LOGGER.info(
            "Starting %d instances every %.3fs against %s with %d byte payloads",
            len(self.runners),
            self.config.request_interval,
            self.config.rpc_url,
            self.config.pad_size,
        )

        start = time.monotonic()
        try:
            tasks = [
                asyncio.create_task(runner.run(self._stop_event), name=f"traffic-instance-{runner.index}")
                for runner in self.runners
            ]
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for runner, result in zip(self.runners, results):
                if isinstance(result, BaseException):
                    LOGGER.error("instance=%d crashed", runner.index, exc_info=result)
        finally:
            if stop_timer is not None:
                stop_timer.cancel()
            for sig in installed:
                loop.remove_signal_handler(sig)
            if self._owns_client:
                await self.client.close()
            LOGGER.info("Traffic generator stopped after %.2fs", time.monotonic() - start)

    def stop(self) -> None:
        if not self._stop_event.is_set():
            LOGGER.info("Stop requested")
        self._stop_event.set()


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, on_signal: Callable[[], None]) -> List[signal.Signals]:
    """Install SIGINT/SIGTERM handlers to stop the generator gracefully."""

    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, on_signal)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows / non-main thread
            LOGGER.debug("Signal handlers not supported here")
            break
        installed.append(sig)
    return installed


def setup_logging(level: str = "INFO") -> None:
    """Configure basic logging output."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def run_with_config(config: TrafficConfig, duration: Optional[float] = None) -> None:
    """Helper to run the generator with asyncio.run."""

    async def _runner() -> None:
        generator = TrafficGenerator(config)
        await generator.run(duration=duration)

    asyncio.run(_runner())
