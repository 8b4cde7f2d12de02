"""
Configuration Module for Team Coordination

Reads environment overrides once at import time. Callers that need different
values at runtime (tests, the tool server) use configure().
"""

import os
import logging
from typing import Optional

logger = logging.getLogger(__name__)

# ============================================================================
# CONFIGURATION CONSTANTS
# ============================================================================

DEFAULT_STATE_DIR = os.path.join('.teamcoord', 'state')
DEFAULT_STALE_THRESHOLD_MS = 5 * 60 * 1000
DEFAULT_LEAD_NAME = 'team-lead'

# Fixed size of the per-agent tool usage window. Not configurable.
MAX_TOOL_USAGE_ENTRIES = 50

# Dashboard id prefix length
AGENT_ID_DISPLAY_LENGTH = 7


def _int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}, using default {default}")
        return default
    if value < 0:
        logger.warning(f"Ignoring negative {name}={value}, using default {default}")
        return default
    return value


# TEAMCOORD_STATE_DIR: state directory relative to the working directory
# Example: export TEAMCOORD_STATE_DIR=.omc/state
STATE_DIR = os.getenv('TEAMCOORD_STATE_DIR', DEFAULT_STATE_DIR)
STALE_THRESHOLD_MS = _int_from_env('TEAMCOORD_STALE_THRESHOLD_MS', DEFAULT_STALE_THRESHOLD_MS)
LEAD_NAME = os.getenv('TEAMCOORD_LEAD_NAME', DEFAULT_LEAD_NAME)
LOG_LEVEL = os.getenv('TEAMCOORD_LOG_LEVEL', 'INFO').upper()

__all__ = [
    'DEFAULT_STATE_DIR',
    'DEFAULT_STALE_THRESHOLD_MS',
    'DEFAULT_LEAD_NAME',
    'MAX_TOOL_USAGE_ENTRIES',
    'AGENT_ID_DISPLAY_LENGTH',
    'STATE_DIR',
    'STALE_THRESHOLD_MS',
    'LEAD_NAME',
    'LOG_LEVEL',
    'configure',
]


def configure(
    state_dir: Optional[str] = None,
    stale_threshold_ms: Optional[int] = None,
    lead_name: Optional[str] = None,
) -> None:
    """
    Override configuration values at runtime.

    Args:
        state_dir: State directory relative to a working directory
        stale_threshold_ms: Advisory staleness threshold in milliseconds
        lead_name: Participant allowed to create and requeue tasks
    """
    global STATE_DIR, STALE_THRESHOLD_MS, LEAD_NAME
    if state_dir is not None:
        STATE_DIR = state_dir
    if stale_threshold_ms is not None:
        if stale_threshold_ms < 0:
            raise ValueError(f"stale_threshold_ms must be >= 0, got {stale_threshold_ms}")
        STALE_THRESHOLD_MS = stale_threshold_ms
    if lead_name is not None:
        if not lead_name.strip():
            raise ValueError("lead_name must be a non-empty string")
        LEAD_NAME = lead_name
    logger.debug(
        f"Coordination configured: state_dir={STATE_DIR}, "
        f"stale_threshold_ms={STALE_THRESHOLD_MS}, lead={LEAD_NAME}"
    )
