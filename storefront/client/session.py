"""购物车会话：绑定应用启动与退出的生命周期"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Set

from storefront.client.api import ReservationApiClient
from storefront.client.cart import CartEntry, CartState, CartStorage
from storefront.client.countdown import CountdownTimer
from storefront.client.reconcile import ReconcileResult, reconcile_cart
from storefront.core.exceptions import ReservationNotHeld
from storefront.core.expiry import utcnow
from storefront.schemas.reservation_api import ReservationData

logger = logging.getLogger(__name__)


def get_or_create_actor_id(storage: CartStorage) -> str:
    """读取本地保存的匿名顾客标识，没有则新建并保存"""
    cart = storage.load()
    if cart is not None and cart.actor_id:
        return cart.actor_id

    actor_id = str(uuid.uuid4())
    storage.save(CartState(actor_id))
    logger.info(f"创建匿名顾客标识: {actor_id}")
    return actor_id


class CartSession:
    """购物车会话

    start() 加载并对账，之后每个条目都有一个倒计时；
    倒计时归零时移除条目并通知服务端释放。close() 取消全部计时任务。
    """

    def __init__(
        self,
        api: ReservationApiClient,
        storage: CartStorage,
        actor_id: Optional[str] = None,
        on_expire: Optional[Callable[[CartEntry], None]] = None,
        clock: Callable[[], datetime] = utcnow,
        tick_interval: float = 1.0,
    ):
        self.api = api
        self.storage = storage
        self.actor_id = actor_id
        self.on_expire = on_expire
        self.clock = clock
        self.tick_interval = tick_interval
        self.cart: Optional[CartState] = None
        self._timers: Dict[int, CountdownTimer] = {}
        # 已到期、正在通知服务端释放的计时任务
        self._expiring: Set[CountdownTimer] = set()

    async def start(self) -> ReconcileResult:
        if self.actor_id is None:
            self.actor_id = get_or_create_actor_id(self.storage)

        self.cart = self.storage.load() or CartState(self.actor_id)
        result = await reconcile_cart(self.cart, self.api, self.actor_id)
        self.storage.save(self.cart)

        for entry in self.cart.entries:
            self._arm(entry)

        logger.info(
            f"购物车会话已启动: actor_id={self.actor_id}, "
            f"kept={len(result.kept)}, dropped={len(result.dropped)}"
        )
        return result

    async def add_product(self, product_id: int, name: str = "", price: Decimal = Decimal("0")) -> CartEntry:
        """预占成功后才加入购物车；失败时 ReservationError 原样抛给调用方"""
        existing = self.cart.get(product_id)
        if existing is not None:
            return existing

        grant = await self.api.reserve(product_id, self.actor_id)
        entry = CartEntry(
            product_id=product_id,
            actor_id=self.actor_id,
            reservation_id=grant.reservation_id,
            name=name,
            price=price,
            expires_at=grant.expires_at,
        )
        self.cart.add(entry)
        self.storage.save(self.cart)
        self._arm(entry)
        return entry

    async def remove_product(self, product_id: int) -> Optional[CartEntry]:
        entry = self.cart.remove(product_id)
        self._disarm(product_id)
        self.storage.save(self.cart)
        if entry is not None:
            await self.api.release(product_id, self.actor_id)
        return entry

    async def clear(self) -> List[CartEntry]:
        removed = self.cart.clear()
        for entry in removed:
            self._disarm(entry.product_id)
        self.storage.save(self.cart)
        for entry in removed:
            await self.api.release(entry.product_id, self.actor_id)
        return removed

    async def complete_checkout(self) -> List[ReservationData]:
        """支付成功后调用，预占转为已售并清空购物车

        服务端整体转换：若某件商品已不再持有预占，则一件都不会售出，
        该商品移出购物车后异常原样抛给调用方。
        """
        if not len(self.cart):
            return []

        try:
            consumed = await self.api.consume(self.actor_id, self.cart.product_ids)
        except ReservationNotHeld as e:
            if e.product_id is not None and self.cart.remove(e.product_id) is not None:
                self._disarm(e.product_id)
                self.storage.save(self.cart)
                logger.info(f"结算时预占已失效，移出购物车: product_id={e.product_id}")
            raise

        for product_id in self.cart.product_ids:
            self._disarm(product_id)
        self.cart.clear()
        self.storage.save(self.cart)
        logger.info(f"结算完成: actor_id={self.actor_id}, items={len(consumed)}")
        return consumed

    async def close(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        for timer in timers:
            await timer.wait()
        # 到期释放不取消，等它发完再关闭客户端
        for timer in list(self._expiring):
            await timer.wait()
        await self.api.close()

    def time_remaining(self, product_id: int):
        timer = self._timers.get(product_id)
        return timer.remaining if timer else None

    def countdown_label(self, product_id: int) -> Optional[str]:
        timer = self._timers.get(product_id)
        return timer.label if timer else None

    def expiring_soon(self) -> List[CartEntry]:
        """两分钟内到期的条目，用于提醒尽快结算"""
        return [
            entry for entry in self.cart.entries
            if entry.product_id in self._timers and self._timers[entry.product_id].expiring_soon
        ]

    # ==================== 内部方法 ====================

    def _arm(self, entry: CartEntry) -> None:
        self._disarm(entry.product_id)

        async def expire():
            await self._handle_expire(entry.product_id)

        self._timers[entry.product_id] = CountdownTimer(
            entry.expires_at,
            on_expire=expire,
            clock=self.clock,
            interval=self.tick_interval,
        ).start()

    def _disarm(self, product_id: int) -> None:
        timer = self._timers.pop(product_id, None)
        if timer is not None:
            timer.cancel()

    async def _handle_expire(self, product_id: int) -> None:
        # 计时任务自身在执行，只移出不取消
        timer = self._timers.pop(product_id, None)
        if timer is not None:
            self._expiring.add(timer)
        try:
            entry = self.cart.remove(product_id)
            if entry is None:
                return

            self.storage.save(self.cart)
            logger.info(f"预占已到期，移出购物车: product_id={product_id}")
            await self.api.release(product_id, self.actor_id)
            if self.on_expire:
                self.on_expire(entry)
        finally:
            self._expiring.discard(timer)
