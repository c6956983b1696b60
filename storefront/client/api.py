"""预占 HTTP API 的异步客户端

错误响应按 error_code 还原成服务端同一套异常，
调用方可以区分"被他人抢先"和"临时故障"。
"""

import logging
from typing import Dict, List, Optional

import httpx

from storefront.core.config import settings
from storefront.core.exceptions import ReservationError, TransientFailure, error_from_code
from storefront.schemas.reservation_api import ReservationData, ReservationDetail
from storefront.services.reservation_service import Availability

logger = logging.getLogger(__name__)


class ReservationApiClient:
    """预占服务客户端

    每个调用都可以被取消；服务端已经开始的预占不会因此中断。
    """

    def __init__(
        self,
        base_url: str = settings.API_BASE_URL,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def __aenter__(self) -> "ReservationApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    # ==================== 预占 ====================

    async def reserve(self, product_id: int, actor_id: str) -> ReservationData:
        """预占商品，失败时抛出 ReservationError 子类"""
        body = await self._request(
            "POST", "/reservations",
            json={"product_id": product_id, "actor_id": actor_id},
        )
        return ReservationData.model_validate(body["data"])

    async def release(self, product_id: int, actor_id: str, deferred: bool = False) -> bool:
        """释放预占（尽力而为，不抛异常）

        deferred=True 时由服务端投递异步任务，返回值恒为 False。
        """
        params = {"actor_id": actor_id}
        if deferred:
            params["deferred"] = "true"
        try:
            body = await self._request(
                "DELETE", f"/reservations/{product_id}",
                params=params,
            )
        except (ReservationError, httpx.HTTPError, RuntimeError, ValueError) as e:
            # 包括客户端已关闭（RuntimeError）和非 JSON 响应体（ValueError）
            logger.warning(f"释放预占失败，等待服务端清理: product_id={product_id}, error={str(e)}")
            return False
        return isinstance(body, dict) and bool(body.get("data"))

    async def consume(self, actor_id: str, product_ids: List[int]) -> List[ReservationData]:
        """支付成功后将预占转为已售"""
        body = await self._request(
            "POST", "/reservations/consume",
            json={"actor_id": actor_id, "product_ids": list(product_ids)},
        )
        return [ReservationData.model_validate(item) for item in body.get("data", [])]

    async def list_reservations(self, actor_id: str) -> List[ReservationDetail]:
        """查询顾客当前持有的有效预占"""
        body = await self._request("GET", f"/reservations/actor/{actor_id}")
        return [ReservationDetail.model_validate(item) for item in body.get("data", [])]

    # ==================== 商品状态 ====================

    async def get_availability(self, product_id: int) -> Availability:
        body = await self._request("GET", f"/products/{product_id}/availability")
        return Availability(body["status"])

    async def batch_availability(self, product_ids: List[int], sweep: bool = False) -> Dict[int, Availability]:
        body = await self._request(
            "POST", "/products/availability/batch",
            params={"sweep": "true"} if sweep else None,
            json={"product_ids": list(product_ids)},
        )
        return {int(pid): Availability(status) for pid, status in body.get("data", {}).items()}

    # ==================== 内部方法 ====================

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.warning(f"请求预占服务失败: {method} {path}, error={str(e)}")
            raise TransientFailure() from e

        if response.is_error:
            raise self._error_from(response)
        return response.json()

    @staticmethod
    def _error_from(response: httpx.Response) -> ReservationError:
        try:
            body = response.json()
        except ValueError:
            body = {}

        message = body.get("message") if isinstance(body, dict) else None
        error_code = body.get("error_code") if isinstance(body, dict) else None
        product_id = body.get("product_id") if isinstance(body, dict) else None

        if error_code:
            return error_from_code(error_code, message, product_id)
        if response.status_code >= 500:
            return TransientFailure(message)
        return ReservationError(message)
