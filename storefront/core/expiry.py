"""预占时长与过期判断"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from storefront.core.config import settings

# 预占有效期（默认15分钟）
RESERVATION_TTL = timedelta(minutes=settings.RESERVATION_TTL_MINUTES)

# 即将过期提醒窗口
EXPIRING_SOON_WINDOW = timedelta(minutes=2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite 等不保存时区的存储读回来是 naive 时间，统一按 UTC 处理"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_expiry(now: datetime, ttl: timedelta = RESERVATION_TTL) -> datetime:
    return as_utc(now) + ttl


def is_expired(expires_at: datetime, now: datetime) -> bool:
    # 到期时刻本身即视为过期，与清理条件 expires_at <= now 一致
    return as_utc(expires_at) <= as_utc(now)


def time_remaining(expires_at: datetime, now: datetime) -> timedelta:
    remaining = as_utc(expires_at) - as_utc(now)
    return max(remaining, timedelta(0))


def is_expiring_soon(expires_at: datetime, now: datetime) -> bool:
    remaining = time_remaining(expires_at, now)
    return timedelta(0) < remaining <= EXPIRING_SOON_WINDOW


def format_time_remaining(remaining: timedelta) -> str:
    """格式化剩余时间：满一分钟显示 M:SS，否则显示 Ns"""
    total_seconds = max(int(remaining.total_seconds()), 0)
    minutes, seconds = divmod(total_seconds, 60)
    if minutes > 0:
        return f"{minutes}:{seconds:02d}"
    return f"{seconds}s"
