"""商品预占 API 路由"""

from fastapi import APIRouter, Depends, HTTPException, Query, Path, Body
from sqlalchemy.orm import Session
import logging

from storefront.core.dependencies import (
    get_db,
    get_redis,
    get_redlock,
)
from storefront.services.reservation_service import ReservationService
from storefront.schemas.reservation_api import (
    ReserveRequest,
    ConsumeRequest,
    ReservationData,
    ReservationDetail,
    ReservationResponse,
    ReleaseResponse,
    ConsumeResponse,
    ActorReservationsResponse,
    ErrorResponse,
    SweepResponse,
    CeleryTaskResponse,
    TaskStatusResponse,
)
from tasks.reservation_tasks import (
    sweep_expired_reservations as celery_sweep_task,
    release_reservation as celery_release_task,
)

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/reservations",
    tags=["商品预占"],
    responses={
        404: {"model": ErrorResponse, "description": "商品不存在"},
        409: {"model": ErrorResponse, "description": "商品已被他人预占 / 未持有预占"},
        410: {"model": ErrorResponse, "description": "商品已售出"},
        422: {"description": "请求验证失败"},
        503: {"model": ErrorResponse, "description": "临时故障，可重试"},
        500: {"description": "服务器内部错误"}
    }
)

@router.post(
    "",
    response_model=ReservationResponse,
    summary="预占商品",
    description="""加入购物车时锁定孤品，15分钟后自动过期。

    **特点：**
    - 商品行级锁 + 部分唯一索引，同一商品最多一条有效预占
    - 同一顾客重复点击返回原有预占（幂等）
    - 到期时间以服务端为准，客户端倒计时使用返回的 expires_at
    """,
)
def reserve_product(
    request: ReserveRequest = Body(...),
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
    rlock = Depends(get_redlock)
):
    """预占商品（防止同一件孤品被两人买走）"""
    try:
        service = ReservationService(db, redis, rlock)
        grant = service.reserve(request.product_id, request.actor_id)
        return {
            "success": True,
            "message": "Item reserved" if grant.created else "Item already reserved by you",
            "data": ReservationData.model_validate(grant),
        }
    except HTTPException:
        # 透传 HTTPException
        raise
    except Exception as e:
        logger.error(f"预占商品失败: {str(e)}")
        # 未知异常统一抛 500
        raise HTTPException(status_code=500, detail=str(e))

@router.delete(
    "/{product_id}",
    response_model=ReleaseResponse,
    summary="释放预占",
    description="""移出购物车、清空购物车或对账清理时调用。

    **注意：**
    - 只会清除仍属于该顾客的商品锁，迟到的释放请求不会影响他人的新预占
    - 尽力而为，失败由下一次过期清理兜底
    - deferred=true 时投递 Celery 任务后立即返回，调用方不必等待数据库写入
    """,
)
def release_product(
    product_id: int = Path(
        ...,
        gt=0,
        description="商品ID",
    ),
    actor_id: str = Query(
        ...,
        min_length=1,
        max_length=64,
        description="顾客标识",
    ),
    deferred: bool = Query(
        False,
        description="是否异步释放",
    ),
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
    rlock = Depends(get_redlock)
):
    """释放预占（不会向调用方报错）"""
    if deferred:
        try:
            task = celery_release_task.delay(product_id, actor_id)
            return {
                "success": True,
                "message": "Release scheduled",
                "data": False,
                "task_id": task.id,
            }
        except Exception as e:
            # 投递失败时改为同步释放
            logger.warning(f"异步释放任务提交失败，改为同步释放: product_id={product_id}, error={str(e)}")

    service = ReservationService(db, redis, rlock)
    released = service.release(product_id, actor_id)
    return {
        "success": True,
        "message": "Reservation released" if released else "No active reservation to release",
        "data": released,
    }

@router.post(
    "/consume",
    response_model=ConsumeResponse,
    summary="支付成功转为已售",
    description="""支付成功后由结算流程调用，将预占转为已售。

    **注意：**
    - 全部商品在同一事务内转换，任一商品未持有预占则整体回滚并返回 409
    - 409 响应的 product_id 指明未持有预占的商品
    - 支付失败或取消请调用释放接口
    """,
)
def consume_reservations(
    request: ConsumeRequest = Body(...),
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
    rlock = Depends(get_redlock)
):
    """结算：同一事务内转换全部商品，任一失败则整体回滚"""
    try:
        service = ReservationService(db, redis, rlock)
        grants = service.consume_all(request.product_ids, request.actor_id)
        return {
            "success": True,
            "message": "Reservations consumed",
            "data": [ReservationData.model_validate(grant) for grant in grants],
        }
    except HTTPException:
        # 透传 HTTPException
        raise
    except Exception as e:
        logger.error(f"结算转换失败: {str(e)}")
        # 未知异常统一抛 500
        raise HTTPException(status_code=500, detail=str(e))

@router.get(
    "/actor/{actor_id}",
    response_model=ActorReservationsResponse,
    summary="查询顾客当前预占",
    description="客户端加载购物车时用来对账，只返回未失效且未到期的预占。",
)
def list_actor_reservations(
    actor_id: str = Path(
        ...,
        min_length=1,
        max_length=64,
        description="顾客标识",
    ),
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
    rlock = Depends(get_redlock)
):
    """查询顾客当前持有的有效预占"""
    try:
        service = ReservationService(db, redis, rlock)
        reservations = service.get_actor_reservations(actor_id)
        return {
            "success": True,
            "actor_id": actor_id,
            "data": [ReservationDetail.model_validate(r) for r in reservations],
        }
    except HTTPException:
        # 透传 HTTPException
        raise
    except Exception as e:
        logger.error(f"查询顾客预占失败: {str(e)}")
        # 未知异常统一抛 500
        raise HTTPException(status_code=500, detail=str(e))

@router.post("/sweep/manual", response_model=SweepResponse)
def manual_sweep(
    batch_size: int = Query(500, ge=1, le=10000),
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
    rlock = Depends(get_redlock)
):
    """手动触发过期清理（API 直接调用 Service）"""
    service = ReservationService(db, redis, rlock)
    count = service.sweep_expired(batch_size)
    return {
        "success": True,
        "message": "Manual sweep finished",
        "released_count": count
    }

@router.post("/sweep/celery", response_model=CeleryTaskResponse)
def celery_sweep(batch_size: int = Query(500, ge=1, le=10000)):
    """触发 Celery 异步清理任务"""
    try:
        # 异步触发 Celery 任务
        task = celery_sweep_task.delay(batch_size)
        return {
            "success": True,
            "message": "Sweep task submitted",
            "task_id": task.id
        }
    except HTTPException:
        # 透传 HTTPException
        raise
    except Exception as e:
        logger.error(f"Celery 任务提交失败: {str(e)}")
        # 未知异常统一抛 500
        raise HTTPException(status_code=500, detail=str(e))

@router.get("/sweep/status/{task_id}", response_model=TaskStatusResponse)
def get_sweep_status(task_id: str):
    """查询 Celery 任务执行状态"""
    try:
        from celery_app import app
        task = app.AsyncResult(task_id)

        if task.state == 'PENDING':
            status = "Task pending"
        elif task.state == 'SUCCESS':
            status = f"Task finished: {task.result}"
        elif task.state == 'FAILURE':
            status = f"Task failed: {str(task.info)}"
        else:
            status = f"Task state: {task.state}"

        return {
            "task_id": task_id,
            "status": status,
            "state": task.state
        }
    except HTTPException:
        # 透传 HTTPException
        raise
    except Exception as e:
        logger.error(f"查询任务状态失败: {str(e)}")
        # 未知异常统一抛 500
        raise HTTPException(status_code=500, detail=str(e))
