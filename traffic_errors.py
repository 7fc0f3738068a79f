"""Error taxonomy for the DA traffic generator.

Startup errors (configuration, key decoding) abort the process. Everything
raised while an instance is ticking is isolated to that tick.
"""

from __future__ import annotations


class TrafficGeneratorError(Exception):
    """Base class for all traffic generator failures."""


class ConfigurationError(TrafficGeneratorError, ValueError):
    """Malformed or missing startup parameters."""


class KeyDecodeError(TrafficGeneratorError):
    """A signer private key could not be parsed."""


class RpcError(TrafficGeneratorError):
    """A JSON-RPC call to the chain endpoint failed."""

    def __init__(self, method: str, message: str) -> None:
        super().__init__(f"{method}: {message}")
        self.method = method


class CraftError(TrafficGeneratorError):
    """Building or signing a transaction failed."""


class NonceFetchError(CraftError):
    pass


class ChainIdFetchError(CraftError):
    pass


class SigningError(CraftError):
    pass


class SubmissionError(TrafficGeneratorError):
    """The node rejected the transaction or the send failed in transit."""


class BalanceQueryError(TrafficGeneratorError):
    """The post-send balance lookup failed."""

