"""
Bridge configuration — loads env vars, validates required, fails fast.

Hardened with:
  - URL validation for Supabase and the Atomiq gateway endpoints
  - Range validation for poll interval, batch size and HTTP timeout
  - Startup warnings for dangerous configs
"""

import os
import sys
from pathlib import Path
from dotenv import load_dotenv

# Load .env from project root
_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_env_path)

_WARNINGS: list = []  # collected during load, printed at summary


def _require(name: str) -> str:
    """Get a required env var or exit with a clear error."""
    val = os.getenv(name)
    if not val:
        print(f"FATAL: missing required env var: {name}", file=sys.stderr)
        print(f"  Copy .env.example to .env and fill in the values.", file=sys.stderr)
        sys.exit(1)
    return val.strip()


def _optional(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _validate_url(url: str, label: str) -> str:
    """Validate a URL starts with http:// or https://."""
    if not url.startswith(("http://", "https://")):
        print(f"FATAL: {label} must start with http:// or https://: {url}", file=sys.stderr)
        sys.exit(1)
    return url.rstrip("/")


def _int_range(name: str, raw: str, low: int, high: int) -> int:
    """Parse an int and clamp to [low, high] with a warning."""
    try:
        val = int(raw)
    except ValueError:
        print(f"FATAL: {name} must be an integer, got: {raw}", file=sys.stderr)
        sys.exit(1)
    if val < low or val > high:
        clamped = max(low, min(val, high))
        _WARNINGS.append(f"{name}={val} out of range [{low},{high}], clamped to {clamped}")
        return clamped
    return val


# === Supabase (order store) ===
SUPABASE_URL: str = _validate_url(_require("SUPABASE_URL"), "SUPABASE_URL")
SUPABASE_KEY: str = _require("SUPABASE_KEY")

# === Atomiq swap gateway (one base URL per bitcoin network) ===
ATOMIQ_GATEWAY_URL_MAINNET: str = _validate_url(
    _require("ATOMIQ_GATEWAY_URL_MAINNET"), "ATOMIQ_GATEWAY_URL_MAINNET"
)
ATOMIQ_GATEWAY_URL_TESTNET: str = _optional("ATOMIQ_GATEWAY_URL_TESTNET", "")
if ATOMIQ_GATEWAY_URL_TESTNET:
    ATOMIQ_GATEWAY_URL_TESTNET = _validate_url(ATOMIQ_GATEWAY_URL_TESTNET, "ATOMIQ_GATEWAY_URL_TESTNET")
else:
    ATOMIQ_GATEWAY_URL_TESTNET = ATOMIQ_GATEWAY_URL_MAINNET
    _WARNINGS.append("ATOMIQ_GATEWAY_URL_TESTNET not set — testnet orders use the mainnet gateway")
ATOMIQ_GATEWAY_API_KEY: str = _optional("ATOMIQ_GATEWAY_API_KEY", "")
if not ATOMIQ_GATEWAY_API_KEY:
    _WARNINGS.append("ATOMIQ_GATEWAY_API_KEY not set — gateway requests are unauthenticated")

GATEWAY_URLS = {
    "mainnet": ATOMIQ_GATEWAY_URL_MAINNET,
    "testnet": ATOMIQ_GATEWAY_URL_TESTNET,
}

# === Tuning (with range validation) ===
BRIDGE_POLL_INTERVAL: int = _int_range("BRIDGE_POLL_INTERVAL", _optional("BRIDGE_POLL_INTERVAL", "30"), 5, 3600)
BRIDGE_ACTIVE_BATCH_LIMIT: int = _int_range(
    "BRIDGE_ACTIVE_BATCH_LIMIT", _optional("BRIDGE_ACTIVE_BATCH_LIMIT", "100"), 1, 1000
)
ATOMIQ_HTTP_TIMEOUT: int = _int_range("ATOMIQ_HTTP_TIMEOUT", _optional("ATOMIQ_HTTP_TIMEOUT", "30"), 1, 300)
LOG_LEVEL: str = _optional("LOG_LEVEL", "INFO")
if LOG_LEVEL not in ("DEBUG", "INFO", "WARNING", "ERROR"):
    _WARNINGS.append(f"Unknown LOG_LEVEL '{LOG_LEVEL}', defaulting to INFO")
    LOG_LEVEL = "INFO"


def print_config_summary() -> None:
    """Print a non-sensitive config summary for startup verification."""
    print("--- Bridge Config ---")
    print(f"  Supabase:        {SUPABASE_URL[:40]}...")
    print(f"  Gateway mainnet: {ATOMIQ_GATEWAY_URL_MAINNET[:40]}")
    print(f"  Gateway testnet: {ATOMIQ_GATEWAY_URL_TESTNET[:40]}")
    print(f"  Gateway auth:    {'yes' if ATOMIQ_GATEWAY_API_KEY else 'no'}")
    print(f"  Poll interval:   {BRIDGE_POLL_INTERVAL}s")
    print(f"  Batch limit:     {BRIDGE_ACTIVE_BATCH_LIMIT}")
    print(f"  HTTP timeout:    {ATOMIQ_HTTP_TIMEOUT}s")
    print(f"  Log level:       {LOG_LEVEL}")
    if _WARNINGS:
        print(f"  ⚠️  {len(_WARNINGS)} config warning(s):")
        for w in _WARNINGS:
            print(f"    - {w}")
    print("-" * 21)
