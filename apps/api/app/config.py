"""Runtime configuration for the ingestion service.

Limits are read from the environment once per call to ``get_ingest_config()``.
Size ceilings are the only guard against runaway work; the pipeline has no
wall-clock timeouts.
"""

import os
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

MB = 1024 * 1024


@dataclass(frozen=True)
class IngestConfig:
    """Size ceilings and scheduling knobs for one ingestion."""
    max_upload_bytes: int = 100 * MB
    max_object_entry_bytes: int = 50 * MB
    max_scan_entry_bytes: int = 30 * MB
    yield_every: int = 5000
    verify_crc: bool = True
    max_model_dimension: float = 10000.0


def _env_int(name: str, default: int, scale: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(float(raw.strip()) * scale)
    except ValueError:
        logger.warning(f"Ignoring malformed {name}={raw!r}, using default {default}")
        return default
    if value <= 0:
        logger.warning(f"Ignoring non-positive {name}={raw!r}, using default {default}")
        return default
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        logger.warning(f"Ignoring malformed {name}={raw!r}, using default {default}")
        return default
    if value <= 0:
        logger.warning(f"Ignoring non-positive {name}={raw!r}, using default {default}")
        return default
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    logger.warning(f"Ignoring malformed {name}={raw!r}, using default {default}")
    return default


def get_ingest_config() -> IngestConfig:
    """Build an ``IngestConfig`` from ``INGEST_*`` environment variables."""
    defaults = IngestConfig()
    return IngestConfig(
        max_upload_bytes=_env_int("INGEST_MAX_UPLOAD_MB", defaults.max_upload_bytes, scale=MB),
        max_object_entry_bytes=_env_int("INGEST_MAX_OBJECT_ENTRY_MB", defaults.max_object_entry_bytes, scale=MB),
        max_scan_entry_bytes=_env_int("INGEST_MAX_SCAN_ENTRY_MB", defaults.max_scan_entry_bytes, scale=MB),
        yield_every=_env_int("INGEST_YIELD_EVERY", defaults.yield_every),
        verify_crc=_env_bool("INGEST_VERIFY_CRC", defaults.verify_crc),
        max_model_dimension=_env_float("INGEST_MAX_MODEL_DIMENSION", defaults.max_model_dimension),
    )
