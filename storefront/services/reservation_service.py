"""商品预占服务实现"""

import enum
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from redis import Redis
from redlock import Redlock
from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.core.config import settings
from storefront.core.exceptions import (
    ReservationError,
    ProductLockedByOther,
    TransientFailure,
    ProductNotFound,
    ProductSold,
    ReservationNotHeld,
)
from storefront.core.expiry import RESERVATION_TTL, as_utc, compute_expiry, utcnow
from storefront.models.product import Product
from storefront.models.reservations import UNFLAGGED_INDEX_NAME, Reservation, ReleaseReason
from storefront.models.reservation_logs import ReservationLog, ChangeType

logger = logging.getLogger(__name__)


class Availability(str, enum.Enum):
    """商品展示状态"""
    AVAILABLE = "available"
    RESERVED = "reserved"
    SOLD = "sold"


@dataclass(frozen=True)
class ReservationGrant:
    """预占结果（以服务端到期时间为准）"""
    reservation_id: int
    product_id: int
    actor_id: str
    expires_at: datetime
    created: bool = True

    @classmethod
    def from_reservation(cls, reservation: Reservation, created: bool = True) -> "ReservationGrant":
        return cls(
            reservation_id=reservation.id,
            product_id=reservation.product_id,
            actor_id=reservation.actor_id,
            expires_at=as_utc(reservation.expires_at),
            created=created,
        )


def availability_cache_key(product_id: int) -> str:
    return f"reservation:availability:{product_id}"


def is_unflagged_conflict(error: IntegrityError) -> bool:
    """是否为"同一商品只允许一条未失效预占"的唯一索引冲突

    PostgreSQL 通过 diag 给出约束名；SQLite 只在消息里给出表名和列名。
    """
    orig = getattr(error, "orig", None)
    diag = getattr(orig, "diag", None)
    constraint_name = getattr(diag, "constraint_name", None)
    if constraint_name:
        return constraint_name == UNFLAGGED_INDEX_NAME
    return f"UNIQUE constraint failed: {Reservation.__tablename__}.product_id" in str(orig)


class ReservationService:
    """孤品预占核心服务类

    同一商品同一时刻最多只有一条有效预占（expired = false 且 expires_at > now）。
    校验与写入在同一事务内完成：先对商品行加锁，再由部分唯一索引兜底，
    并发竞争的失败方统一得到 ProductLockedByOther。
    """

    def __init__(
        self,
        db: Session,
        redis: Redis = None,
        rlock: Redlock = None,
        clock: Callable[[], datetime] = utcnow,
        ttl: timedelta = RESERVATION_TTL,
    ):
        self.db = db
        self.redis = redis
        self.rlock = rlock
        self.clock = clock
        self.ttl = ttl

    # ==================== 预占 ====================

    def reserve(self, product_id: int, actor_id: str) -> ReservationGrant:
        """预占商品（加入购物车时调用）

        同一顾客重复预占返回原有记录；他人持有有效预占时抛出 ProductLockedByOther。
        """
        lock_key = f"lock:reservation:{product_id}"
        lock = None

        # 获取分布式锁（可选，数据库仍是最终裁决）
        if self.rlock:
            lock = self.rlock.lock(lock_key, ttl=settings.LOCK_TTL_MS)
            if not lock:
                raise TransientFailure(product_id=product_id)

        try:
            grant = self._reserve_in_transaction(product_id, actor_id)
            self.db.commit()
        except ReservationError:
            self.db.rollback()
            raise
        except IntegrityError as e:
            self.db.rollback()
            if not is_unflagged_conflict(e):
                logger.error(f"预占写入违反约束，事务已回滚: product_id={product_id}, error={str(e)}")
                raise TransientFailure(product_id=product_id) from e
            # 部分唯一索引拒绝了后到的一方
            logger.info(f"预占竞争失败: product_id={product_id}, actor_id={actor_id}")
            raise ProductLockedByOther(product_id=product_id) from e
        except SQLAlchemyError as e:
            # 单事务回滚即补偿：不会留下孤立的预占记录或商品锁字段
            self.db.rollback()
            logger.error(f"预占失败，事务已回滚: product_id={product_id}, error={str(e)}")
            raise TransientFailure(product_id=product_id) from e
        finally:
            # 释放分布式锁
            if self.rlock and lock:
                self.rlock.unlock(lock)

        if grant.created:
            logger.info(
                f"预占成功: product_id={product_id}, actor_id={actor_id}, "
                f"reservation_id={grant.reservation_id}, expires_at={grant.expires_at.isoformat()}"
            )
        else:
            logger.info(f"重复预占，返回已有记录: product_id={product_id}, actor_id={actor_id}")

        self._invalidate_cache([product_id])
        return grant

    def _reserve_in_transaction(self, product_id: int, actor_id: str) -> ReservationGrant:
        now = self.clock()

        # 使用行级锁查询商品
        product = self._lock_products([product_id]).get(product_id)

        if product is None:
            raise ProductNotFound(product_id=product_id)
        if product.is_sold:
            raise ProductSold(product_id=product_id)

        active = self._active_reservations(product_id, now)
        if active:
            holder = active[0]
            if holder.actor_id != actor_id:
                logger.info(
                    f"商品已被他人预占: product_id={product_id}, actor_id={actor_id}, "
                    f"holder={holder.actor_id}"
                )
                raise ProductLockedByOther(product_id=product_id)

            # 同一顾客：幂等返回，顺带修正漂移的冗余字段
            if self._lock_fields_drifted(product, holder):
                logger.warning(f"商品锁字段与预占记录不一致，已修正: product_id={product_id}")
                self._write_lock_fields(product, holder)
            self._add_log(ChangeType.REGRANT, holder, operator=f"actor_{actor_id}", source="storefront")
            self.db.flush()
            return ReservationGrant.from_reservation(holder, created=False)

        # 已过期但未清理的记录先失效，部分唯一索引才会接受新记录
        self._supersede_stale(product_id, now)

        reservation = Reservation(
            actor_id=actor_id,
            product_id=product_id,
            created_at=now,
            expires_at=compute_expiry(now, self.ttl),
            expired=False,
        )
        self.db.add(reservation)
        self.db.flush()

        # 写冗余字段前再读一次商品，确认没有他人的有效锁
        self.db.refresh(product)
        if self._held_by_other(product, actor_id, now):
            logger.warning(
                f"商品锁字段显示他人持有，放弃本次预占: product_id={product_id}, "
                f"locked_by={product.locked_by}"
            )
            raise ProductLockedByOther(product_id=product_id)

        self._write_lock_fields(product, reservation)
        self._add_log(ChangeType.RESERVE, reservation, operator=f"actor_{actor_id}", source="storefront")
        self.db.flush()
        return ReservationGrant.from_reservation(reservation, created=True)

    # ==================== 释放 ====================

    def release(self, product_id: int, actor_id: str) -> bool:
        """释放预占（移出购物车、清空购物车、对账清理时调用）

        尽力而为，不向调用方抛出异常；只清除仍属于该顾客的商品锁字段。

        Returns:
            是否有预占记录被释放
        """
        now = self.clock()
        try:
            # 与预占相同的加锁顺序：先商品行，再预占记录
            self._lock_products([product_id])

            reservations = self.db.execute(
                select(Reservation)
                .where(
                    Reservation.product_id == product_id,
                    Reservation.actor_id == actor_id,
                    Reservation.expired.is_(False),
                )
            ).scalars().all()

            for reservation in reservations:
                reservation.mark_expired(ReleaseReason.RELEASED, now)
                self._add_log(ChangeType.RELEASE, reservation, operator=f"actor_{actor_id}", source="storefront")

            cleared = self._clear_lock_fields(product_id, actor_id)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"释放预占失败，等待下次清理: product_id={product_id}, actor_id={actor_id}, error={str(e)}")
            return False

        self._invalidate_cache([product_id])

        if reservations or cleared:
            logger.info(f"释放预占成功: product_id={product_id}, actor_id={actor_id}")
        else:
            logger.debug(f"无可释放的预占: product_id={product_id}, actor_id={actor_id}")

        return bool(reservations)

    # ==================== 结算 ====================

    def consume(self, product_id: int, actor_id: str) -> ReservationGrant:
        """支付成功后将单个商品的预占转为已售"""
        return self.consume_all([product_id], actor_id)[0]

    def consume_all(self, product_ids: List[int], actor_id: str) -> List[ReservationGrant]:
        """支付成功后将一次结算的全部预占转为已售

        全部商品在同一事务内转换：任一商品未持有预占则整体回滚，不会出现部分售出。

        Raises:
            ReservationNotHeld: 顾客已不再持有某个商品的预占
        """
        now = self.clock()
        product_ids = list(dict.fromkeys(product_ids))
        try:
            products = self._lock_products(product_ids)
            grants = [
                self._consume_locked(products.get(product_id), product_id, actor_id, now)
                for product_id in product_ids
            ]
            self.db.commit()
        except ReservationError as e:
            self.db.rollback()
            logger.info(f"结算转换被拒绝，全部回滚: actor_id={actor_id}, product_id={e.product_id}, error={e.error_code}")
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"结算转换失败: product_ids={product_ids}, actor_id={actor_id}, error={str(e)}")
            raise TransientFailure() from e

        logger.info(f"预占已转为已售: product_ids={product_ids}, actor_id={actor_id}")
        self._invalidate_cache(product_ids)
        return grants

    def _consume_locked(
        self, product: Optional[Product], product_id: int, actor_id: str, now: datetime
    ) -> ReservationGrant:
        if product is None:
            raise ProductNotFound(product_id=product_id)

        reservation = self.db.execute(
            select(Reservation)
            .where(
                Reservation.product_id == product_id,
                Reservation.actor_id == actor_id,
                Reservation.expired.is_(False),
            )
            .order_by(Reservation.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()

        if reservation is None:
            consumed = self._consumed_reservation(product_id, actor_id) if product.is_sold else None
            if consumed is None:
                raise ReservationNotHeld(product_id=product_id)
            # 支付回调重试：已转为已售，直接返回
            return ReservationGrant.from_reservation(consumed, created=False)

        reservation.mark_expired(ReleaseReason.CONSUMED, now)
        if product.locked_by in (None, actor_id):
            product.clear_lock()
        product.is_sold = True
        self._add_log(ChangeType.CONSUME, reservation, operator=f"actor_{actor_id}", source="checkout")
        return ReservationGrant.from_reservation(reservation, created=False)

    # ==================== 过期清理 ====================

    def sweep_expired(self, batch_size: int = 500) -> int:
        """清理过期的预占记录

        Args:
            batch_size: 批处理大小，默认500条

        Returns:
            本次释放的预占数量
        """
        total_released = 0
        now = self.clock()

        while True:
            try:
                # 先找出候选记录，不加锁
                candidates = self.db.execute(
                    select(Reservation.product_id)
                    .where(
                        Reservation.expired.is_(False),
                        Reservation.expires_at <= now,
                    )
                    .order_by(Reservation.id)
                    .limit(batch_size)
                ).scalars().all()

                if not candidates:
                    break

                # 与预占相同的加锁顺序：先商品行（skip_locked 防止多worker竞争），再预占记录
                locked_ids = list(self._lock_products(set(candidates), skip_locked=True))
                if not locked_ids:
                    self.db.rollback()
                    logger.info("候选商品均被其他事务锁定，留待下次清理")
                    break

                expired_reservations = self.db.execute(
                    select(Reservation)
                    .where(
                        Reservation.product_id.in_(locked_ids),
                        Reservation.expired.is_(False),
                        Reservation.expires_at <= now,
                    )
                    .order_by(Reservation.id)
                ).scalars().all()

                logger.info(f"本次清理 {len(expired_reservations)} 条过期预占记录")

                for reservation in expired_reservations:
                    reservation.mark_expired(ReleaseReason.SWEPT, now)
                    # 只清除仍属于该顾客且已过期的商品锁
                    self._clear_lock_fields(reservation.product_id, reservation.actor_id, lapsed_at=now)
                    self._add_log(ChangeType.SWEEP, reservation, operator="system_sweep", source="sweep_job")

                self.db.commit()
                total_released += len(expired_reservations)
                self._invalidate_cache(locked_ids)
                logger.info(f"已完成批次清理，累计清理 {total_released} 条记录")

                # 如果本次候选少于批处理大小，说明已经清理完所有过期记录
                if len(candidates) < batch_size or not expired_reservations:
                    break

            except SQLAlchemyError as e:
                logger.error(f"批处理清理过程中发生错误: {str(e)}")
                self.db.rollback()
                break

        self._clear_orphaned_locks(now)

        logger.info(f"清理任务完成，总共清理 {total_released} 条过期预占记录")
        return total_released

    def count_sweepable(self) -> int:
        """统计待清理的过期预占数量（试运行）"""
        now = self.clock()
        return self.db.execute(
            select(func.count(Reservation.id))
            .where(
                Reservation.expired.is_(False),
                Reservation.expires_at <= now,
            )
        ).scalar_one()

    def _clear_orphaned_locks(self, now: datetime) -> int:
        """清除没有预占记录对应、且已过期的商品锁字段"""
        try:
            result = self.db.execute(
                update(Product)
                .where(
                    Product.locked.is_(True),
                    Product.locked_until <= now,
                )
                .values(locked=False, locked_until=None, locked_by=None)
                .execution_options(synchronize_session="fetch")
            )
            self.db.commit()
        except SQLAlchemyError as e:
            logger.error(f"清除过期商品锁失败: {str(e)}")
            self.db.rollback()
            return 0

        if result.rowcount:
            logger.info(f"清除 {result.rowcount} 个已过期的商品锁字段")
        return result.rowcount

    # ==================== 查询 ====================

    def get_availability(self, product_id: int) -> Availability:
        """查询商品展示状态（带缓存）"""
        cache_key = availability_cache_key(product_id)

        # 先查缓存
        if self.redis:
            cached = self.redis.get(cache_key)
            if cached is not None:
                logger.debug(f"Cache hit for product {product_id}")
                return Availability(cached)

        # 缓存未命中，查询数据库
        product = self.db.execute(
            select(Product).where(Product.id == product_id)
        ).scalar_one_or_none()
        if product is None:
            raise ProductNotFound(product_id=product_id)

        status, ttl = self._availability_of(product, self.clock())

        if self.redis:
            self.redis.setex(cache_key, ttl, status.value)
            logger.debug(f"Cache set for product {product_id}: {status.value}")

        return status

    def batch_availability(self, product_ids: List[int]) -> Dict[int, Availability]:
        """批量查询商品展示状态（列表页使用）"""
        if not product_ids:
            return {}

        results = {}
        uncached_ids = []

        # 先查缓存
        if self.redis:
            cached_values = self.redis.mget([availability_cache_key(pid) for pid in product_ids])

            for pid, cached in zip(product_ids, cached_values):
                if cached is not None:
                    results[pid] = Availability(cached)
                    logger.debug(f"Batch cache hit for product {pid}")
                else:
                    uncached_ids.append(pid)
        else:
            uncached_ids = list(product_ids)

        # 查询未缓存的商品
        if uncached_ids:
            products = self.db.execute(
                select(Product).where(Product.id.in_(uncached_ids))
            ).scalars().all()

            now = self.clock()
            pipe = self.redis.pipeline() if self.redis else None

            for product in products:
                status, ttl = self._availability_of(product, now)
                results[product.id] = status
                if pipe is not None:
                    pipe.setex(availability_cache_key(product.id), ttl, status.value)

            if pipe is not None:
                pipe.execute()

        return results

    def get_actor_reservations(self, actor_id: str) -> List[Reservation]:
        """查询顾客当前持有的有效预占（客户端对账使用）"""
        now = self.clock()
        return self.db.execute(
            select(Reservation)
            .where(
                Reservation.actor_id == actor_id,
                Reservation.expired.is_(False),
                Reservation.expires_at > now,
            )
            .order_by(Reservation.created_at)
        ).scalars().all()

    # ==================== 内部方法 ====================

    def _lock_products(self, product_ids, skip_locked: bool = False) -> Dict[int, Product]:
        """按商品ID升序对商品行加锁，所有写路径都先经过这里"""
        if not product_ids:
            return {}
        products = self.db.execute(
            select(Product)
            .where(Product.id.in_(sorted(product_ids)))
            .order_by(Product.id)
            .with_for_update(skip_locked=skip_locked)
        ).scalars().all()
        return {product.id: product for product in products}

    def _active_reservations(self, product_id: int, now: datetime) -> List[Reservation]:
        return self.db.execute(
            select(Reservation)
            .where(
                Reservation.product_id == product_id,
                Reservation.expired.is_(False),
                Reservation.expires_at > now,
            )
            .order_by(Reservation.created_at)
        ).scalars().all()

    def _supersede_stale(self, product_id: int, now: datetime) -> None:
        stale = self.db.execute(
            select(Reservation)
            .where(
                Reservation.product_id == product_id,
                Reservation.expired.is_(False),
                Reservation.expires_at <= now,
            )
        ).scalars().all()

        for reservation in stale:
            reservation.mark_expired(ReleaseReason.SUPERSEDED, now)
        if stale:
            self.db.flush()

    def _consumed_reservation(self, product_id: int, actor_id: str) -> Optional[Reservation]:
        return self.db.execute(
            select(Reservation)
            .where(
                Reservation.product_id == product_id,
                Reservation.actor_id == actor_id,
                Reservation.release_reason == ReleaseReason.CONSUMED,
            )
            .limit(1)
        ).scalar_one_or_none()

    def _clear_lock_fields(self, product_id: int, actor_id: str, lapsed_at: Optional[datetime] = None) -> int:
        """按归属条件清除商品锁字段，避免迟到的释放覆盖他人的新锁"""
        stmt = update(Product).where(
            Product.id == product_id,
            Product.locked_by == actor_id,
        )
        if lapsed_at is not None:
            stmt = stmt.where(Product.locked_until <= lapsed_at)

        result = self.db.execute(
            stmt.values(locked=False, locked_until=None, locked_by=None)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    @staticmethod
    def _held_by_other(product: Product, actor_id: str, now: datetime) -> bool:
        return bool(
            product.locked
            and product.locked_by != actor_id
            and product.locked_until is not None
            and as_utc(product.locked_until) > now
        )

    @staticmethod
    def _lock_fields_drifted(product: Product, reservation: Reservation) -> bool:
        return not (
            product.locked
            and product.locked_by == reservation.actor_id
            and as_utc(product.locked_until) == as_utc(reservation.expires_at)
        )

    @staticmethod
    def _write_lock_fields(product: Product, reservation: Reservation) -> None:
        product.locked = True
        product.locked_until = reservation.expires_at
        product.locked_by = reservation.actor_id

    def _availability_of(self, product: Product, now: datetime):
        cache_ttl = settings.AVAILABILITY_CACHE_TTL
        if product.is_sold:
            return Availability.SOLD, cache_ttl
        if product.locked and product.locked_until is not None:
            remaining = (as_utc(product.locked_until) - now).total_seconds()
            if remaining > 0:
                # 缓存不能比锁活得更久
                return Availability.RESERVED, max(1, min(cache_ttl, math.ceil(remaining)))
        return Availability.AVAILABLE, cache_ttl

    def _add_log(self, change_type: ChangeType, reservation: Reservation, operator: str, source: str) -> None:
        log = ReservationLog(
            product_id=reservation.product_id,
            actor_id=reservation.actor_id,
            reservation_id=reservation.id,
            change_type=change_type,
            operator=operator,
            source=source,
        )
        self.db.add(log)

    def _invalidate_cache(self, product_ids) -> None:
        """失效商品展示状态缓存"""
        if not self.redis:
            return
        for product_id in product_ids:
            try:
                self.redis.delete(availability_cache_key(product_id))
                logger.debug(f"Cache invalidated for product {product_id}")
            except Exception as e:
                logger.warning(f"缓存失效失败: product_id={product_id}, error={str(e)}")
