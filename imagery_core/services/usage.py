from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import List

from sqlmodel import Session, select

from ..database import init_db, session_scope
from ..models import ApiUsageStat
from .cache import PROVIDER_ESRI_WAYBACK, PROVIDER_GOOGLE_EARTH

logger = logging.getLogger(__name__)

TRACKED_PROVIDERS = (PROVIDER_GOOGLE_EARTH, PROVIDER_ESRI_WAYBACK)

_usage_initialized = False


def _ensure_usage_table() -> None:
    global _usage_initialized
    if not _usage_initialized:
        init_db()
        _usage_initialized = True


def record_api_usage(provider: str, *, increment: int = 1) -> None:
    """Count ``increment`` upstream tile requests against ``provider``.

    Cache hits never reach this function, so the counter reflects traffic that
    actually left the process.
    """

    if provider not in TRACKED_PROVIDERS:
        raise ValueError(f"Unknown imagery provider: {provider}")
    if increment <= 0:
        return

    _ensure_usage_table()

    with session_scope() as session:
        stat = session.exec(select(ApiUsageStat).where(ApiUsageStat.provider == provider)).one_or_none()
        if stat is None:
            stat = ApiUsageStat(provider=provider, request_count=0)
        stat.request_count += increment
        stat.last_used_at = datetime.now(UTC)
        session.add(stat)
        session.commit()
        logger.debug("%s usage now %d requests", provider, stat.request_count)


def usage_stats(session: Session) -> List[ApiUsageStat]:
    """Counters for every provider that has been used, ordered by provider key."""

    return list(session.exec(select(ApiUsageStat).order_by(ApiUsageStat.provider)).all())
