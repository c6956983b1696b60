"""预占相关异常定义

服务层直接抛出带状态码的异常，路由层透传，
全局异常处理器再附加 error_code / retryable 字段，
让前端能把"被别人抢先"与真正的系统故障区分开。
"""

from typing import Optional

from fastapi import HTTPException


class ReservationError(HTTPException):
    """预占异常基类"""

    status_code = 400
    error_code = "RESERVATION_ERROR"
    retryable = False
    default_message = "Reservation failed"

    def __init__(self, message: Optional[str] = None, product_id: Optional[int] = None):
        self.product_id = product_id
        super().__init__(
            status_code=type(self).status_code,
            detail=message or self.default_message,
        )

    @property
    def message(self) -> str:
        return self.detail


class ProductLockedByOther(ReservationError):
    """商品已被其他顾客预占（预期内的业务结果）"""

    status_code = 409
    error_code = "PRODUCT_LOCKED_BY_OTHER"
    default_message = "This item is currently reserved by another customer"


class TransientFailure(ReservationError):
    """数据存储临时故障，可重试"""

    status_code = 503
    error_code = "TRANSIENT_FAILURE"
    retryable = True
    default_message = "We couldn't reserve this item right now, please try again"


class ProductNotFound(ReservationError):
    """商品不存在或已被删除"""

    status_code = 404
    error_code = "PRODUCT_NOT_FOUND"
    default_message = "This item is no longer available"


class ProductSold(ReservationError):
    """商品已售出"""

    status_code = 410
    error_code = "PRODUCT_SOLD"
    default_message = "This item has already been sold"


class ReservationNotHeld(ReservationError):
    """结算时该顾客并未持有有效预占"""

    status_code = 409
    error_code = "RESERVATION_NOT_HELD"
    default_message = "Your reservation for this item is no longer held"


ERRORS_BY_CODE = {
    cls.error_code: cls
    for cls in (
        ReservationError,
        ProductLockedByOther,
        TransientFailure,
        ProductNotFound,
        ProductSold,
        ReservationNotHeld,
    )
}


def error_from_code(
    error_code: Optional[str], message: Optional[str] = None, product_id: Optional[int] = None
) -> ReservationError:
    """根据 error_code 还原异常（客户端使用）"""
    cls = ERRORS_BY_CODE.get(error_code or "", ReservationError)
    return cls(message, product_id=product_id)
