"""预占API专用的Pydantic模型和响应格式"""

from datetime import datetime
from typing import List, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from storefront.services.reservation_service import Availability


# ==================== 请求模型 ====================

class ReserveRequest(BaseModel):
    """预占商品请求"""
    product_id: int = Field(
        ...,
        gt=0,
        description="商品ID",
        examples=[1]
    )
    actor_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="顾客标识（匿名会话ID或用户ID）",
        examples=["2b1f0c3e-6a59-4f55-9d0e-3a1c2f8e7b10"]
    )


class ConsumeRequest(BaseModel):
    """支付成功后结算请求"""
    actor_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="顾客标识"
    )
    product_ids: List[int] = Field(
        ...,
        min_length=1,
        max_length=100,
        description="已支付的商品ID列表",
        examples=[[1, 2]]
    )


class BatchAvailabilityRequest(BaseModel):
    """批量查询商品状态请求"""
    product_ids: List[int] = Field(
        ...,
        min_length=1,
        max_length=100,
        description="商品ID列表",
        examples=[[1, 2, 3]]
    )


# ==================== 数据模型 ====================

class ReservationData(BaseModel):
    """预占详情"""
    model_config = ConfigDict(from_attributes=True)

    reservation_id: int = Field(..., description="预占记录ID")
    product_id: int = Field(..., description="商品ID")
    actor_id: str = Field(..., description="顾客标识")
    expires_at: datetime = Field(..., description="服务端到期时间（UTC）")
    created: bool = Field(True, description="是否新建（False 表示重复预占返回已有记录）")


class ReservationDetail(BaseModel):
    """预占记录详情"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    actor_id: str
    product_id: int
    created_at: Optional[datetime] = None
    expires_at: datetime
    expired: bool


# ==================== 响应模型 ====================

class BaseResponse(BaseModel):
    """基础响应模型"""
    success: bool = Field(
        ...,
        description="请求是否成功"
    )
    message: Optional[str] = Field(
        None,
        description="响应消息"
    )


class ErrorResponse(BaseResponse):
    """预占失败响应"""
    error_code: Optional[str] = Field(
        None,
        description="错误码：PRODUCT_LOCKED_BY_OTHER / TRANSIENT_FAILURE / PRODUCT_NOT_FOUND ..."
    )
    retryable: bool = Field(
        False,
        description="是否可以重试"
    )
    product_id: Optional[int] = Field(
        None,
        description="出错的商品ID（结算时指明是哪件商品未持有预占）"
    )


class ReservationResponse(BaseResponse):
    """预占响应"""
    data: Optional[ReservationData] = Field(
        None,
        description="预占结果"
    )


class ReleaseResponse(BaseResponse):
    """释放响应"""
    data: bool = Field(
        False,
        description="是否有预占被释放"
    )
    task_id: Optional[str] = Field(
        None,
        description="异步释放时的 Celery 任务ID"
    )


class ConsumeResponse(BaseResponse):
    """结算响应"""
    data: List[ReservationData] = Field(
        default_factory=list,
        description="已转为已售的预占"
    )


class ActorReservationsResponse(BaseResponse):
    """顾客当前预占列表"""
    actor_id: str
    data: List[ReservationDetail] = Field(default_factory=list)


class AvailabilityResponse(BaseResponse):
    """单个商品状态响应"""
    product_id: int = Field(
        ...,
        description="商品ID"
    )
    status: Availability = Field(
        ...,
        description="available / reserved / sold"
    )


class BatchAvailabilityResponse(BaseResponse):
    """批量商品状态响应"""
    data: Dict[int, Availability] = Field(
        ...,
        description="商品ID到状态的映射"
    )


class SweepResponse(BaseResponse):
    """清理任务响应"""
    released_count: Optional[int] = Field(
        None,
        ge=0,
        description="释放的预占数量"
    )


class CeleryTaskResponse(BaseResponse):
    """Celery任务响应"""
    task_id: Optional[str] = Field(
        None,
        description="任务ID"
    )


class TaskStatusResponse(BaseModel):
    """任务状态响应"""
    task_id: str = Field(
        ...,
        description="任务ID"
    )
    status: str = Field(
        ...,
        description="任务状态描述"
    )
    state: str = Field(
        ...,
        description="任务状态码"
    )
