import os
import logging
from typing import List, Optional
from solders.pubkey import Pubkey
from dotenv import load_dotenv

from mcp_sale_escrow.errors import ConfigurationError

"""
Configuration Management for the Sale Escrow

This module handles configuration loading and validation for the sale registry and the
MCP server. Settings come from environment variables (optionally via a .env file) with
defaults suitable for local development.

Environment Variables:
    ADMIN_ADDRESSES: Comma-separated base58 public keys seeded into the access gate
    FEE_RATE_BPS: Service fee in basis points applied to sales deployed afterwards (0-10000)
    FEE_RECIPIENT: Public key receiving the service fee
    NATIVE_SYMBOL: Symbol of the native base currency
    NATIVE_DECIMALS: Decimals of the native base currency (0-18)
    SALE_EXPORT_DIR: Directory where sale snapshots are written
"""

logger = logging.getLogger(__name__)

load_dotenv()

BASIS_POINTS = 10_000

# Zero key: the null identity. 00..01: the burn sink for leftover tokens.
NULL_ADDRESS = Pubkey.default()
BURN_ADDRESS = Pubkey(bytes(31) + b"\x01")


def _get_env_str(key: str, default: str, required: bool = False) -> str:
    """Get environment variable as string with validation."""
    value = os.getenv(key, default)
    if required and not value:
        raise ConfigurationError(f"Required environment variable {key} is not set")
    return value


def _get_env_int(key: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    """Get environment variable as integer with validation."""
    try:
        value = int(os.getenv(key, str(default)))
    except ValueError:
        raise ConfigurationError(f"Environment variable {key} must be a valid integer")
    if min_val is not None and value < min_val:
        raise ConfigurationError(f"Environment variable {key} must be >= {min_val}")
    if max_val is not None and value > max_val:
        raise ConfigurationError(f"Environment variable {key} must be <= {max_val}")
    return value


def _get_env_pubkey(key: str, default: str) -> Pubkey:
    """Get environment variable as Pubkey with validation."""
    try:
        value = os.getenv(key, default)
        return Pubkey.from_string(value)
    except Exception as e:
        raise ConfigurationError(f"Environment variable {key} must be a valid public key: {e}")


def _get_env_pubkey_list(key: str) -> List[Pubkey]:
    """Get a comma-separated list of public keys; empty entries are skipped."""
    raw = os.getenv(key, "")
    keys = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            keys.append(Pubkey.from_string(part))
        except Exception as e:
            raise ConfigurationError(f"Environment variable {key} contains an invalid public key '{part}': {e}")
    return keys


try:
    # --- Access Control ---
    ADMIN_ADDRESSES = _get_env_pubkey_list("ADMIN_ADDRESSES")

    # --- Service Fee ---
    DEFAULT_FEE_RATE_BPS = _get_env_int("FEE_RATE_BPS", 0, min_val=0, max_val=BASIS_POINTS)
    DEFAULT_FEE_RECIPIENT = _get_env_pubkey("FEE_RECIPIENT", str(BURN_ADDRESS))

    # --- Native Base Currency ---
    NATIVE_SYMBOL = _get_env_str("NATIVE_SYMBOL", "SOL", required=True)
    NATIVE_DECIMALS = _get_env_int("NATIVE_DECIMALS", 9, min_val=0, max_val=18)

    # --- Directories ---
    SALE_EXPORT_DIR = _get_env_str("SALE_EXPORT_DIR", "sale_exports")

    if not ADMIN_ADDRESSES:
        logger.warning("ADMIN_ADDRESSES is empty; admin-gated operations will be rejected until an admin exists")
    logger.info("Configuration loaded successfully")

except ConfigurationError as e:
    logger.error(f"Configuration error: {e}")
    raise
