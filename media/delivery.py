from __future__ import annotations

from media.config import SIZE_CEILING_BYTES
from media.models import Delivery


def effective_ceiling(upload_limit: int | None, configured: int = SIZE_CEILING_BYTES) -> int:
    """Smaller of the guild's upload limit (when known) and the configured ceiling."""
    limit = int(upload_limit or 0)
    if limit <= 0:
        return configured
    return min(limit, configured)


def decide_delivery(size_bytes: int, ceiling: int = SIZE_CEILING_BYTES) -> Delivery:
    if size_bytes <= ceiling:
        return Delivery.ATTACH
    return Delivery.LINK_ONLY
