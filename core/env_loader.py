# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Centralized environment variable loader for the Geo Assistant.
This module ensures all services load from the root .env file consistently.
"""

import logging
import math
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_root_env(root_dir: Optional[Path] = None) -> bool:
    """
    Load environment variables from the root .env file.

    Variables already present in the process environment win over the file,
    so deployments can override anything the checked-in .env provides.
    """
    if root_dir is None:
        # Repository root is one level up from this package
        root_dir = Path(__file__).resolve().parent.parent
    env_path = Path(root_dir) / ".env"

    if env_path.exists():
        logger.info(f"Loading environment from: {env_path}")
        load_dotenv(env_path, override=False)
        return True

    logger.debug(f"Root .env file not found at: {env_path}, using system environment variables")
    return False


def get_float_env(key: str, default: float) -> float:
    """Read a positive float from the environment, falling back to ``default``."""
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid value for {key}={raw!r}, using default {default}")
        return default
    if not math.isfinite(value) or value <= 0:
        logger.warning(f"Non-positive value for {key}={raw!r}, using default {default}")
        return default
    return value


def get_int_env(key: str, default: int) -> int:
    """Read a positive integer from the environment, falling back to ``default``."""
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid value for {key}={raw!r}, using default {default}")
        return default
    if value <= 0:
        logger.warning(f"Non-positive value for {key}={raw!r}, using default {default}")
        return default
    return value


def validate_environment() -> dict:
    """
    Report which optional provider credentials are configured.

    Nothing here is strictly required: every provider degrades to
    "unavailable" when its credential is missing.
    """
    optional_vars = [
        "AZURE_MAPS_SUBSCRIPTION_KEY",
        "AQICN_TOKEN",
    ]

    validation_results = {
        "valid": True,
        "missing": [],
        "present": []
    }

    for var in optional_vars:
        if os.getenv(var):
            validation_results["present"].append(var)
        else:
            validation_results["missing"].append(var)

    return validation_results
