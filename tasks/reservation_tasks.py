"""预占相关的 Celery 任务"""

from celery_app import app
from storefront.db.session import SessionLocal
from storefront.services.reservation_service import ReservationService
from storefront.core.redis import redis_client, redlock
import logging

logger = logging.getLogger(__name__)

@app.task(name='tasks.reservations.sweep_expired')
def sweep_expired_reservations(batch_size: int = 500):
    """清理过期的预占记录（由 beat 定时触发，也可手动提交）

    Args:
        batch_size: 批处理大小，默认500条

    Returns:
        清理的记录数量描述
    """
    db = SessionLocal()
    try:
        service = ReservationService(db, redis_client, redlock)
        count = service.sweep_expired(batch_size)
        result = f"成功清理 {count} 条过期预占记录"
        logger.info(result)
        return result
    except Exception as e:
        logger.error(f"清理过期预占任务执行失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()

@app.task(name='tasks.reservations.release')
def release_reservation(product_id: int, actor_id: str):
    """异步释放预占（客户端对账或结算失败后投递）

    Args:
        product_id: 商品ID
        actor_id: 顾客标识
    """
    db = SessionLocal()
    try:
        service = ReservationService(db, redis_client, redlock)
        released = service.release(product_id, actor_id)
        logger.info(f"异步释放预占: product_id={product_id}, actor_id={actor_id}, released={released}")
        return {"product_id": product_id, "actor_id": actor_id, "released": released}
    finally:
        db.close()

# 导出任务
__all__ = [
    'sweep_expired_reservations',
    'release_reservation',
]
