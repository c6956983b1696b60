"""依赖注入配置模块"""

import logging

from fastapi import Depends

# 数据库会话依赖
from storefront.db.session import SessionLocal
from sqlalchemy.orm import Session

# Redis 依赖
from storefront.core.redis import redis_client, redlock

from storefront.services.reservation_service import ReservationService

logger = logging.getLogger(__name__)


def get_redis():
    """获取同步 Redis 客户端，不可用时返回 None（服务降级为无缓存）"""
    try:
        redis_client.ping()
        return redis_client
    except Exception as e:
        logger.warning(f"Redis unavailable, running without cache: {e}")
        return None

def get_redlock():
    """获取 Redlock 分布式锁实例，Redis 不可用时只依赖数据库行锁"""
    try:
        redis_client.ping()
        return redlock
    except Exception as e:
        logger.warning(f"Redis unavailable, reserving without Redlock: {e}")
        return None

def get_db() -> Session:
    """获取数据库会话"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_reservation_service(
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
    rlock = Depends(get_redlock)
) -> ReservationService:
    """获取预占服务实例（依赖注入）"""
    return ReservationService(db=db, redis=redis, rlock=rlock)

