"""购物车加载时与服务端预占对账"""

import logging
from dataclasses import dataclass, field
from typing import List

from storefront.client.api import ReservationApiClient
from storefront.client.cart import CartEntry, CartState
from storefront.core.exceptions import ReservationError

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    kept: List[CartEntry] = field(default_factory=list)
    dropped: List[CartEntry] = field(default_factory=list)


async def reconcile_cart(cart: CartState, api: ReservationApiClient, actor_id: str) -> ReconcileResult:
    """只保留服务端仍为该顾客持有的条目，其余静默移除

    - 本地购物车属于其他顾客：整体丢弃
    - 服务端有对应预占：保留，并以服务端到期时间为准
    - 服务端没有：移除并尽力释放
    """
    result = ReconcileResult()

    if cart.actor_id != actor_id:
        result.dropped = cart.clear()
        cart.actor_id = actor_id
        logger.info(f"购物车顾客标识不一致，整体丢弃 {len(result.dropped)} 个条目")
        return result

    if not len(cart):
        return result

    try:
        held = {r.product_id: r for r in await api.list_reservations(actor_id)}
    except ReservationError as e:
        # 无法对账时保留本地条目，倒计时会在到期后移除
        logger.warning(f"查询服务端预占失败，暂不对账: actor_id={actor_id}, error={e.message}")
        result.kept = cart.entries
        return result

    for entry in cart.entries:
        reservation = held.get(entry.product_id)
        if reservation is not None and reservation.actor_id == actor_id:
            refreshed = CartEntry.model_validate({
                **entry.model_dump(),
                "reservation_id": reservation.id,
                "expires_at": reservation.expires_at,
            })
            result.kept.append(cart.add(refreshed))
            continue

        cart.remove(entry.product_id)
        result.dropped.append(entry)
        # 启动时不等待数据库写入，由服务端异步释放
        await api.release(entry.product_id, actor_id, deferred=True)

    if result.dropped:
        logger.info(
            f"对账移除 {len(result.dropped)} 个已失效条目: "
            f"product_ids={[e.product_id for e in result.dropped]}"
        )
    return result
