"""
Relayer Configuration

Everything the relayer needs comes from the environment (main.py loads
.env first). Construction is the only validation point: a RelayerConfig
that exists is a RelayerConfig that can start.

The private key never appears in repr() or in error messages.
"""

import os
from dataclasses import dataclass, field
from typing import Final, Mapping, Optional

from .errors import ConfigurationError


# ============================================================
# DEFAULTS
# ============================================================

@dataclass(frozen=True)
class RelayerDefaults:
    POLL_INTERVAL_SECONDS: Final[float] = 15.0   # delay after each poll completes
    CONFIRMATIONS: Final[int] = 2                # blocks on top before acting
    MAX_BLOCKS_PER_POLL: Final[int] = 2000       # cap per get_logs range
    LOOKBACK_BLOCKS: Final[int] = 20             # ~40s of Base blocks at start
    TX_CONFIRMATIONS: Final[int] = 1             # outbound transfer finality
    RPC_TIMEOUT_SECONDS: Final[float] = 30.0
    RECEIPT_TIMEOUT_SECONDS: Final[float] = 120.0
    RPC_URL: Final[str] = "https://mainnet.base.org"
    DATABASE_URL: Final[str] = "sqlite:///data/migration_relays.db"


DEFAULTS = RelayerDefaults()

# env var → RelayerConfig field
REQUIRED_ENV = {
    "MIGRATION_RELAYER_PRIVATE_KEY": "private_key",
    "MIGRATION_RELAYER_ADDRESS": "relayer_address",
    "V1_TOKEN_ADDRESS": "v1_token_address",
    "V2_TOKEN_ADDRESS": "v2_token_address",
    "MIGRATOR_ADDRESS": "migrator_address",
}


@dataclass
class RelayerConfig:
    private_key: str = field(repr=False)
    relayer_address: str
    v1_token_address: str
    v2_token_address: str
    migrator_address: str
    rpc_url: str = DEFAULTS.RPC_URL
    database_url: str = DEFAULTS.DATABASE_URL
    poll_interval_seconds: float = DEFAULTS.POLL_INTERVAL_SECONDS
    confirmations: int = DEFAULTS.CONFIRMATIONS
    max_blocks_per_poll: int = DEFAULTS.MAX_BLOCKS_PER_POLL
    lookback_blocks: int = DEFAULTS.LOOKBACK_BLOCKS
    tx_confirmations: int = DEFAULTS.TX_CONFIRMATIONS
    rpc_timeout_seconds: float = DEFAULTS.RPC_TIMEOUT_SECONDS
    receipt_timeout_seconds: float = DEFAULTS.RECEIPT_TIMEOUT_SECONDS

    def __post_init__(self):
        missing = [
            env_name for env_name, attr in REQUIRED_ENV.items()
            if not (getattr(self, attr) or "").strip()
        ]
        if missing:
            raise ConfigurationError(
                f"Migration relayer requires: {', '.join(missing)}"
            )
        if not self.rpc_url:
            raise ConfigurationError("BASE_RPC_URL must not be empty")

        if self.poll_interval_seconds <= 0:
            raise ConfigurationError("poll_interval_seconds must be positive")
        if self.confirmations < 0 or self.lookback_blocks < 0:
            raise ConfigurationError("confirmations and lookback_blocks must be >= 0")
        if self.max_blocks_per_poll < 1 or self.tx_confirmations < 1:
            raise ConfigurationError("max_blocks_per_poll and tx_confirmations must be >= 1")
        if self.rpc_timeout_seconds <= 0 or self.receipt_timeout_seconds <= 0:
            raise ConfigurationError("RPC timeouts must be positive")

        self._check_signer()

    def _check_signer(self) -> None:
        """The signing key must derive to the configured relayer address."""
        from eth_account import Account

        try:
            derived = Account.from_key(self.private_key).address
        except Exception as e:
            # Do not echo the key (or its parse error, which may quote it)
            raise ConfigurationError(
                f"MIGRATION_RELAYER_PRIVATE_KEY is not a valid key ({type(e).__name__})"
            ) from None

        if derived.lower() != self.relayer_address.strip().lower():
            raise ConfigurationError(
                f"Wallet address {derived} does not match "
                f"MIGRATION_RELAYER_ADDRESS {self.relayer_address}"
            )

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "RelayerConfig":
        """Build from environment variables (os.environ by default)."""
        env = os.environ if env is None else env

        def _num(name: str, default, cast):
            raw = env.get(name, "")
            if raw == "":
                return default
            try:
                return cast(raw)
            except ValueError:
                raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None

        kwargs = {attr: env.get(name, "") for name, attr in REQUIRED_ENV.items()}
        return cls(
            **kwargs,
            rpc_url=env.get("BASE_RPC_URL", DEFAULTS.RPC_URL),
            database_url=env.get("DATABASE_URL", DEFAULTS.DATABASE_URL),
            poll_interval_seconds=_num(
                "MIGRATION_POLL_INTERVAL_SECONDS", DEFAULTS.POLL_INTERVAL_SECONDS, float),
            confirmations=_num("MIGRATION_CONFIRMATIONS", DEFAULTS.CONFIRMATIONS, int),
            max_blocks_per_poll=_num(
                "MIGRATION_MAX_BLOCKS_PER_POLL", DEFAULTS.MAX_BLOCKS_PER_POLL, int),
            lookback_blocks=_num("MIGRATION_LOOKBACK_BLOCKS", DEFAULTS.LOOKBACK_BLOCKS, int),
            tx_confirmations=_num("MIGRATION_TX_CONFIRMATIONS", DEFAULTS.TX_CONFIRMATIONS, int),
            rpc_timeout_seconds=_num(
                "MIGRATION_RPC_TIMEOUT_SECONDS", DEFAULTS.RPC_TIMEOUT_SECONDS, float),
            receipt_timeout_seconds=_num(
                "MIGRATION_RECEIPT_TIMEOUT_SECONDS", DEFAULTS.RECEIPT_TIMEOUT_SECONDS, float),
        )


def is_relayer_configured(env: Optional[Mapping[str, str]] = None) -> bool:
    """True when every required env var is set (does not validate values)."""
    env = os.environ if env is None else env
    return all(env.get(name) for name in REQUIRED_ENV)
