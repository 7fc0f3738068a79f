#!/usr/bin/env python3
"""
traffic.py
Command line entry point for the DA traffic generator.

Usage:
  pip install .
  da-traffic-generator \\
      --traffic-generator.disperser-hostname localhost:8545 \\
      --traffic-generator.num-instances 2 \\
      --traffic-generator.request-interval 1s \\
      --traffic-generator.data-size 1024 \\
      --traffic-generator.signer-private-keys-hex KEY0,KEY1 \\
      --traffic-generator.signer-addresses-hex ADDR0,ADDR1

Every flag can also be set through its TRAFFIC_GENERATOR_* environment
variable, or in a YAML/JSON file passed with --config. Flags win over the
environment, which wins over the file.

Stop with SIGINT or SIGTERM; each instance finishes its current send first.
"""
import argparse
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

from traffic_core import (
    ENV_PREFIX,
    ENV_VARS,
    TrafficConfig,
    env_values,
    load_config_file,
    run_with_config,
    setup_logging,
)
from traffic_errors import ConfigurationError, KeyDecodeError

FLAG_PREFIX = "traffic-generator"

log = logging.getLogger("traffic_generator.cli")


def _flag(name: str) -> str:
    return f"--{FLAG_PREFIX}.{name}"


def _env_help(field_name: str) -> str:
    return f"[${ENV_PREFIX}_{ENV_VARS[field_name]}]"


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="da-traffic-generator",
        description="Service for generating traffic to a DA disperser",
    )
    p.add_argument(_flag("disperser-hostname"), dest="hostname",
                   help="RPC endpoint at which the disperser chain is available " + _env_help("hostname"))
    p.add_argument(_flag("timeout"), dest="timeout",
                   help="Amount of time to wait for RPC calls, e.g. 10s (default 10s) " + _env_help("timeout"))
    p.add_argument(_flag("num-instances"), dest="num_instances",
                   help="Number of generator instances to run in parallel " + _env_help("num_instances"))
    p.add_argument(_flag("data-size"), dest="pad_size",
                   help="Data size in bytes of the extra field " + _env_help("pad_size"))
    p.add_argument(_flag("request-interval"), dest="request_interval",
                   help="Duration between requests, e.g. 2s (default 2s) " + _env_help("request_interval"))
    p.add_argument(_flag("signer-private-keys-hex"), dest="signer_private_keys", action="append",
                   help="Private keys used for signing, comma separated or repeated "
                        + _env_help("signer_private_keys"))
    p.add_argument(_flag("signer-addresses-hex"), dest="addresses", action="append",
                   help="Addresses matching the private keys, comma separated or repeated "
                        + _env_help("addresses"))
    p.add_argument("--config", type=Path, default=None, help="Path to YAML/JSON config file")
    p.add_argument("--duration", type=float, default=None, help="Optional duration (seconds) to run")
    p.add_argument("--log-level", default=os.environ.get(f"{ENV_PREFIX}_LOG_LEVEL", "INFO"),
                   help=f"Logging level (DEBUG, INFO, ...) [${ENV_PREFIX}_LOG_LEVEL]")
    return p


def build_config(args: argparse.Namespace, environ: Mapping[str, str]) -> TrafficConfig:
    """Layer config file, environment and flags, in increasing priority."""

    values: Dict[str, Any] = {}
    if args.config is not None:
        values.update(load_config_file(args.config))
    values.update(env_values(environ))
    for name in ENV_VARS:
        flag_value = getattr(args, name)
        if flag_value is not None:
            values[name] = flag_value
    return TrafficConfig.from_dict(values)


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = build_argparser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    setup_logging(args.log_level)

    try:
        config = build_config(args, os.environ)
    except ConfigurationError as e:
        parser.error(str(e))

    log.info("Starting traffic generator with %d instances against %s", config.num_instances, config.rpc_url)
    try:
        run_with_config(config, args.duration)
    except ConfigurationError as e:
        parser.error(str(e))
    except KeyDecodeError as e:
        log.error("Failed to create traffic generator: %s", e)
        raise SystemExit(1)
    except KeyboardInterrupt:
        log.info("KeyboardInterrupt received; exiting")


if __name__ == "__main__":
    main()
