import logging
import os
import time
from pathlib import Path
from typing import Optional
from uuid import uuid4

logger = logging.getLogger(__name__)

MS_PER_SECOND = 1000
MS_PER_DAY = 24 * 60 * 60 * 1000


class Clock:
    """Wall clock in milliseconds since epoch. Swapped for a fake in tests."""

    def now_ms(self) -> int:
        return int(time.time() * MS_PER_SECOND)

    def monotonic(self) -> float:
        return time.monotonic()


def load_device_id(path: Optional[str]) -> str:
    """
    Returns the stable per-installation device id, creating and persisting it on first use.
    With no path (or an unwritable one) the id lives for this process only.
    """
    if not path:
        return uuid4().hex

    p = Path(path)
    try:
        if p.exists():
            device_id = p.read_text(encoding="utf-8").strip()
            if device_id:
                return device_id
    except OSError as e:
        logger.warning(f"Could not read device id from {p}: {e}")

    device_id = uuid4().hex
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = p.with_suffix(".tmp")
        tmp_path.write_text(device_id, encoding="utf-8")
        os.replace(tmp_path, p)
        logger.info(f"Created device id {device_id} at {p}")
    except OSError as e:
        logger.error(f"Failed to persist device id to {p}: {e}")
    return device_id
