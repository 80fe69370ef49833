"""Utility functions for P6/EBS sync."""

import json
import logging
import os
import sys
import time
from typing import Callable, TypeVar

from models import ClientConfig, SyncConfig

T = TypeVar("T")

logger = logging.getLogger(__name__)

# File paths
CONFIG_FILE = "config.json"
SYNC_LOG_FILE = "sync_operations.json"

BACKENDS = ("live", "fixture")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def load_config(path: str = CONFIG_FILE) -> dict:
    """Load config.json with P6 and EBS credentials."""
    with open(path) as f:
        return json.load(f)


def validate_config(config: dict) -> list[str]:
    """Validate config structure and return list of error messages.

    Credentials are only required for the live backend; the fixture
    backend runs on built-in data.

    Returns:
        Empty list if valid, otherwise list of error messages.
    """
    errors = []

    backend = config.get("backend", "live")
    if backend not in BACKENDS:
        errors.append(f"Unknown backend '{backend}' (expected one of: {', '.join(BACKENDS)})")

    if backend == "live":
        for section in ["p6", "ebs"]:
            if section not in config:
                errors.append(f"Missing section '{section}' in config.json")
                continue
            for key in ["base_url", "username", "password"]:
                if not config[section].get(key):
                    errors.append(f"Missing {section}.{key}")

    for section in ["p6", "ebs"]:
        for key in ["timeout_s", "retry_attempts", "backoff_s"]:
            value = config.get(section, {}).get(key)
            if value is not None and (not isinstance(value, (int, float)) or value < 0):
                errors.append(f"{section}.{key} must be a non-negative number")

    aliases = config.get("sync", {}).get("id_aliases", {})
    if not isinstance(aliases, dict):
        errors.append("sync.id_aliases must be an object mapping id -> id")

    keep = config.get("sync", {}).get("log_max_operations")
    if keep is not None and (not isinstance(keep, int) or isinstance(keep, bool) or keep < 1):
        errors.append("sync.log_max_operations must be a positive integer")

    return errors


def load_config_safe(path: str = CONFIG_FILE) -> dict | None:
    """Load config with user-friendly error messages.

    Returns:
        Config dict if valid, None if errors occurred.
    """
    if not os.path.exists(path):
        print(f"[!] ERROR: {path} not found!")
        print()
        print("    Create config.json based on config.example.json:")
        print("    $ cp config.example.json config.json")
        print("    $ nano config.json  # Fill in your credentials")
        print()
        print("    Or run against built-in data with --fixture.")
        return None

    try:
        config = load_config(path)
    except json.JSONDecodeError as e:
        print(f"[!] ERROR: {path} is not valid JSON!")
        print(f"    Line {e.lineno}, column {e.colno}: {e.msg}")
        print()
        print("    Check for missing commas, quotes, or brackets.")
        return None

    errors = validate_config(config)
    if errors:
        print(f"[!] ERROR: {path} is incomplete:")
        for err in errors:
            print(f"    - {err}")
        print()
        print("    See config.example.json for the required structure.")
        return None

    return config


def client_config(config: dict, section: str) -> ClientConfig:
    """Build typed connection settings from one config section."""
    raw = config.get(section, {})
    return ClientConfig(
        base_url=raw.get("base_url", "").rstrip("/"),
        username=raw.get("username", ""),
        password=raw.get("password", ""),
        database_name=raw.get("database_name"),
        timeout_s=raw.get("timeout_s", 30.0),
        retry_attempts=raw.get("retry_attempts", 3),
        backoff_s=raw.get("backoff_s", 1.0),
        session_ttl_s=raw.get("session_ttl_s", 3600),
    )


def sync_config(config: dict) -> SyncConfig:
    """Build typed sync settings from the 'sync' section."""
    raw = config.get("sync", {})
    return SyncConfig(
        allow_fuzzy_names=bool(raw.get("allow_fuzzy_names", False)),
        external_id_field=raw.get("external_id_field") or None,
        id_aliases=dict(raw.get("id_aliases", {})),
        log_file=raw.get("log_file"),
        log_max_operations=int(raw.get("log_max_operations", 1000)),
    )


def setup_logging(verbose: bool = False) -> None:
    """Send library log records to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    # requests/urllib3 are chatty at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def retry(
    operation: Callable[[], T],
    max_attempts: int = 3,
    delay: float = 1.0,
    is_transient: Callable[[Exception], bool] = lambda e: True,
    on_retry: Callable[[int, Exception], None] | None = None,
) -> T:
    """Execute an operation with exponential-backoff retries.

    Args:
        operation: Callable to execute
        max_attempts: Maximum number of attempts
        delay: Base delay in seconds, doubled after every failed attempt
        is_transient: Decides whether an error is worth another attempt
        on_retry: Optional callback when retrying (attempt_num, exception)

    Returns:
        Result of operation

    Raises:
        The last error once attempts are exhausted, or the first
        non-transient error immediately.
    """
    for attempt in range(max_attempts):
        try:
            return operation()
        except Exception as e:
            if attempt == max_attempts - 1 or not is_transient(e):
                raise
            if on_retry:
                on_retry(attempt + 1, e)
            time.sleep(delay * 2**attempt)
    raise ValueError("max_attempts must be at least 1")
