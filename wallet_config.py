"""
Runtime configuration and logging setup for the BTC vault.

Values are sourced from environment variables or a .env file:

- BTC_NETWORK: "mainnet" or "testnet" (defaults to "mainnet").
- BTC_VAULT_DIR: directory holding the encrypted wallet store
  (defaults to ~/.btc_vault).
- BTC_VAULT_PBKDF2_ITERATIONS: PBKDF2-SHA256 iterations for password-derived
  keys. Values below 600,000 are rejected.
- BTC_LOOKUP_MAX_ACCOUNT / BTC_LOOKUP_RECEIVE_WINDOW / BTC_LOOKUP_CHANGE_WINDOW:
  address -> path reverse lookup window. Clamped by the key manager.
- BTC_VAULT_LOG_LEVEL: stdlib logging level name (defaults to WARNING).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv

from wallet_errors import WalletConfigError

# Load .env from the project root
PROJECT_ROOT = Path(__file__).resolve().parent
load_dotenv(PROJECT_ROOT / ".env")

BTCNetwork = Literal["mainnet", "testnet"]

DEFAULT_PBKDF2_ITERATIONS = 600_000
MIN_PBKDF2_ITERATIONS = 600_000
DEFAULT_VAULT_DIR = Path.home() / ".btc_vault"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _env_non_negative_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise WalletConfigError(
            f"Invalid {name}={raw!r}. Expected a non-negative integer."
        ) from exc
    if value < 0:
        raise WalletConfigError(
            f"Invalid {name}={raw!r}. Expected a non-negative integer."
        )
    return value


@dataclass
class WalletConfig:
    """Configuration for an HD wallet handle."""

    network: BTCNetwork = "mainnet"
    vault_dir: Path = DEFAULT_VAULT_DIR
    pbkdf2_iterations: int = DEFAULT_PBKDF2_ITERATIONS
    lookup: dict[str, int] = field(default_factory=dict)
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> WalletConfig:
        raw_network_env = os.getenv("BTC_NETWORK")
        network: BTCNetwork = "mainnet"
        if raw_network_env:
            raw_network = raw_network_env.strip().lower()
            if raw_network not in {"mainnet", "testnet"}:
                raise WalletConfigError(
                    f"Invalid BTC_NETWORK={raw_network_env!r}. Expected 'mainnet' or 'testnet'."
                )
            network = "mainnet" if raw_network == "mainnet" else "testnet"

        vault_dir_raw = os.getenv("BTC_VAULT_DIR")
        vault_dir = (
            Path(vault_dir_raw).expanduser() if vault_dir_raw else DEFAULT_VAULT_DIR
        )

        iterations = _env_non_negative_int(
            "BTC_VAULT_PBKDF2_ITERATIONS", DEFAULT_PBKDF2_ITERATIONS
        )
        if iterations < MIN_PBKDF2_ITERATIONS:
            raise WalletConfigError(
                f"BTC_VAULT_PBKDF2_ITERATIONS must be at least {MIN_PBKDF2_ITERATIONS}."
            )

        # Only forward the lookup fields that were actually set, so the key
        # manager keeps its own defaults for the rest.
        lookup: dict[str, int] = {}
        for env_name, key in (
            ("BTC_LOOKUP_MAX_ACCOUNT", "max_account_index"),
            ("BTC_LOOKUP_RECEIVE_WINDOW", "receive_window"),
            ("BTC_LOOKUP_CHANGE_WINDOW", "change_window"),
        ):
            if os.getenv(env_name, "").strip():
                lookup[key] = _env_non_negative_int(env_name, 0)

        log_level = os.getenv("BTC_VAULT_LOG_LEVEL", "WARNING").strip().upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise WalletConfigError(
                f"Invalid BTC_VAULT_LOG_LEVEL={log_level!r}. Use DEBUG, INFO, WARNING or ERROR."
            )

        return cls(
            network=network,
            vault_dir=vault_dir,
            pbkdf2_iterations=iterations,
            lookup=lookup,
            log_level=log_level,
        )


def configure_logging(level: int | str = logging.WARNING) -> None:
    """
    Configure Python logging for the vault.

    Sets up a root logger with console output. Does nothing when the root
    logger already has handlers (e.g. under pytest or an embedding host).
    """
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return

    root_logger.setLevel(level)
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
    root_logger.addHandler(console_handler)
