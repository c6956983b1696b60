"""商品状态查询路由（列表页 / 详情页展示徽标）"""

from fastapi import APIRouter, Depends, HTTPException, Query, Path, Body
from sqlalchemy.orm import Session
import logging

from storefront.core.config import settings
from storefront.core.dependencies import get_db, get_redis, get_redlock
from storefront.services.reservation_service import ReservationService
from storefront.schemas.reservation_api import (
    BatchAvailabilityRequest,
    AvailabilityResponse,
    BatchAvailabilityResponse,
    ErrorResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/products",
    tags=["商品状态"],
    responses={
        404: {"model": ErrorResponse, "description": "商品不存在"},
        422: {"description": "请求验证失败"},
        500: {"description": "服务器内部错误"}
    }
)

@router.get(
    "/{product_id}/availability",
    response_model=AvailabilityResponse,
    summary="查询商品状态",
    description="""返回 available / reserved / sold。

    **缓存策略：**
    - 首先查询Redis缓存
    - 缓存时长不超过商品锁的剩余时间
    """,
)
def get_availability(
    product_id: int = Path(
        ...,
        gt=0,
        description="商品ID",
    ),
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
    rlock = Depends(get_redlock)
):
    """查询单个商品状态"""
    try:
        service = ReservationService(db, redis, rlock)
        status = service.get_availability(product_id)
        return {
            "success": True,
            "product_id": product_id,
            "status": status,
        }
    except HTTPException:
        # 透传 HTTPException
        raise
    except Exception as e:
        logger.error(f"查询商品状态失败: {str(e)}")
        # 未知异常统一抛 500
        raise HTTPException(status_code=500, detail=str(e))

@router.post(
    "/availability/batch",
    response_model=BatchAvailabilityResponse,
    summary="批量查询商品状态",
    description="""列表页一次查询多个商品。

    **限制：**
    - 单次最多查询100个商品
    - sweep=true 时先顺带清理一次过期预占
    """,
)
def batch_availability(
    request: BatchAvailabilityRequest = Body(
        ...,
        description="批量查询请求参数"
    ),
    sweep: bool = Query(False, description="查询前先清理过期预占"),
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
    rlock = Depends(get_redlock)
):
    """批量查询商品状态（高性能版本）"""
    try:
        service = ReservationService(db, redis, rlock)
        if sweep:
            service.sweep_expired(settings.SWEEP_BATCH_SIZE)
        statuses = service.batch_availability(request.product_ids)
        return BatchAvailabilityResponse(
            success=True,
            data=statuses
        )
    except HTTPException:
        # 透传 HTTPException
        raise
    except Exception as e:
        logger.error(f"批量查询商品状态失败: {str(e)}")
        # 未知异常统一抛 500
        raise HTTPException(status_code=500, detail=str(e))
