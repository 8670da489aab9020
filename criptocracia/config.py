# criptocracia/config.py

# Configuration holder. Values are parsed here once and handed to each
# component at construction; no component reads the environment or argv.

import argparse
import os
import re
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Optional, Sequence, Tuple

from criptocracia.exceptions import ConfigurationError

DEFAULT_RELAYS = ("wss://relay.mostro.network",)
DEFAULT_EC_PUBLIC_KEY = "0000001ace57d0da17fc18562f4658ac6d093b2cc8bb7bd44853d0c196e24a9c"

_NOSTR_PUBKEY = re.compile(r"^[0-9a-f]{64}$")


@dataclass(frozen=True)
class AppConfig:
    relays: Tuple[str, ...] = DEFAULT_RELAYS
    # Nostr public key (hex) of the Election Commission, recipient of token requests and votes
    ec_public_key: str = DEFAULT_EC_PUBLIC_KEY
    debug: bool = False
    log_dir: Optional[str] = None

    signature_timeout: timedelta = timedelta(seconds=30)
    retention_window: timedelta = timedelta(hours=12)
    election_lookback: timedelta = timedelta(hours=24)
    reconciliation_interval: timedelta = timedelta(seconds=30)
    reconciliation_window: timedelta = timedelta(seconds=5)
    initial_load_grace: timedelta = timedelta(seconds=1)

    # Minimum RSA modulus accepted for EC keys
    min_rsa_bits: int = 2048

    def validate(self):
        if not self.relays:
            raise ConfigurationError("At least one relay URL is required")
        bad = [r for r in self.relays if not r.startswith(("ws://", "wss://"))]
        if bad:
            raise ConfigurationError(f"Invalid relay URL(s): {', '.join(bad)}")
        if not self.ec_public_key or not _NOSTR_PUBKEY.match(self.ec_public_key):
            raise ConfigurationError("EC public key must be a 64 character hex Nostr key")
        if self.signature_timeout.total_seconds() <= 0:
            raise ConfigurationError("signature_timeout must be positive")
        if self.reconciliation_interval.total_seconds() <= 0:
            raise ConfigurationError("reconciliation_interval must be positive")
        return self

    @property
    def is_configured(self) -> bool:
        try:
            self.validate()
            return True
        except ConfigurationError:
            return False

    @classmethod
    def from_env(cls, environ=None) -> "AppConfig":
        """Build a config from CRIPTOCRACIA_* environment variables, defaults otherwise."""
        env = os.environ if environ is None else environ
        kwargs = {}

        relays = env.get("CRIPTOCRACIA_RELAYS")
        if relays:
            kwargs["relays"] = tuple(r.strip() for r in relays.split(",") if r.strip())
        if env.get("CRIPTOCRACIA_EC_PUBKEY"):
            kwargs["ec_public_key"] = env["CRIPTOCRACIA_EC_PUBKEY"].strip().lower()
        if env.get("CRIPTOCRACIA_DEBUG"):
            kwargs["debug"] = env["CRIPTOCRACIA_DEBUG"].lower() in ("1", "true", "yes")
        if env.get("CRIPTOCRACIA_LOG_DIR"):
            kwargs["log_dir"] = env["CRIPTOCRACIA_LOG_DIR"]

        try:
            if env.get("CRIPTOCRACIA_SIGNATURE_TIMEOUT"):
                kwargs["signature_timeout"] = timedelta(seconds=float(env["CRIPTOCRACIA_SIGNATURE_TIMEOUT"]))
            if env.get("CRIPTOCRACIA_RECONCILE_INTERVAL"):
                kwargs["reconciliation_interval"] = timedelta(seconds=float(env["CRIPTOCRACIA_RECONCILE_INTERVAL"]))
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}")

        return cls(**kwargs)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="criptocracia",
        description="Criptocracia voter: anonymous voting over Nostr with blind RSA signatures.",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("-r", "--relay", action="append", dest="relays", metavar="URL",
                        help="Relay URL (repeatable)")
    parser.add_argument("--ec-pubkey", dest="ec_public_key", metavar="HEX",
                        help="Election Commission Nostr public key")
    parser.add_argument("--log-dir", dest="log_dir", help="Directory for rotating log files")
    return parser


def parse_arguments(argv: Optional[Sequence[str]] = None, base: Optional[AppConfig] = None) -> AppConfig:
    """Overlay command line flags on `base` (or the environment config)."""
    args = build_parser().parse_args(argv)
    config = base if base is not None else AppConfig.from_env()

    overrides = {}
    if args.debug:
        overrides["debug"] = True
    if args.relays:
        overrides["relays"] = tuple(args.relays)
    if args.ec_public_key:
        overrides["ec_public_key"] = args.ec_public_key.strip().lower()
    if args.log_dir:
        overrides["log_dir"] = args.log_dir
    return replace(config, **overrides)
