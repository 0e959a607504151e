"""
Migration relayer - main entry point

Loads config, wires the relayer and the status API, starts the server.
The relayer runs inside the app lifespan: started on boot, stopped on
shutdown (an in-flight poll is allowed to finish).

Usage:
    python main.py              # Start relayer + status API
    uvicorn main:app            # Same, via uvicorn
"""

import os
import re
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact 64-char hex strings (private keys) from all log output."""
    _PATTERN = re.compile(r'(?<![0-9a-fA-F])([0-9a-fA-F]{64})(?![0-9a-fA-F])')

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            record.msg = self._PATTERN.sub('[REDACTED]', record.msg)
        if record.args:
            try:
                formatted = record.getMessage()
            except (TypeError, ValueError):
                return True
            if self._PATTERN.search(formatted):
                record.msg = self._PATTERN.sub('[REDACTED]', formatted)
                record.args = None
        return True


_mask_filter = _SecretMaskingFilter()
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("migration.main")


# ============================================================
# MODULE IMPORTS
# ============================================================

from relayer.allocation import AllocationOracle
from relayer.config import RelayerConfig, is_relayer_configured
from relayer.errors import ConfigurationError
from relayer.relayer import build_relayer
from api.server import create_app


# ============================================================
# WIRING
# ============================================================

def create_relayer_app():
    """Create the status app, with a relayer if the environment configures one."""
    relayer = None
    if is_relayer_configured():
        # Raises ConfigurationError on a bad env
        config = RelayerConfig.from_env()
        relayer = build_relayer(config)
    else:
        logger.warning(
            "Migration relayer not configured; set MIGRATION_RELAYER_PRIVATE_KEY, "
            "MIGRATION_RELAYER_ADDRESS, V1_TOKEN_ADDRESS, V2_TOKEN_ADDRESS, MIGRATOR_ADDRESS"
        )

    app = create_app(
        relayer=relayer,
        ledger=relayer.ledger if relayer else None,
        oracle=relayer.oracle if relayer else None,
    )

    @asynccontextmanager
    async def lifespan(app):
        if relayer is not None:
            await relayer.start()
        yield
        if relayer is not None:
            logger.info("Migration relayer shutting down...")
            relayer.stop()
            await relayer.wait_stopped()
            relayer.ledger.dispose()

    app.router.lifespan_context = lifespan
    return app


# ============================================================
# ENTRY POINT
# ============================================================

try:
    app = create_relayer_app()
except ConfigurationError as e:
    logger.critical(f"Invalid relayer configuration: {e}")
    raise

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))

    logger.info(f"Starting server on {host}:{port}")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        log_level=LOG_LEVEL.lower(),
    )
