import enum

from sqlalchemy import (
    Column,
    String,
    Boolean,
    TIMESTAMP,
    Enum,
    Index,
    ForeignKey,
    func,
)
from storefront.db.base import Base
from storefront.models.product import ID_TYPE



# 1️ 释放原因枚举（数据库 ENUM）

class ReleaseReason(str, enum.Enum):
    RELEASED = "RELEASED"       # 顾客主动移出购物车
    SWEPT = "SWEPT"             # 过期清理任务释放
    CONSUMED = "CONSUMED"       # 支付成功，转为已售
    SUPERSEDED = "SUPERSEDED"   # 已过期但未清理，被新的预占顶替



# 2️ 预占表（只追加，不物理删除）

class Reservation(Base):
    __tablename__ = "cart_reservations"

    id = Column(
        ID_TYPE,
        primary_key=True,
        autoincrement=True,
    )

    actor_id = Column(
        String(64),
        nullable=False,
        index=True,
        comment="顾客标识（匿名会话ID或用户ID）",
    )

    product_id = Column(
        ID_TYPE,
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="商品ID",
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    expires_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        comment="预占过期时间",
    )

    expired = Column(
        Boolean,
        nullable=False,
        default=False,
        server_default="0",
        comment="是否已失效（代替物理删除，便于审计）",
    )

    released_at = Column(
        TIMESTAMP(timezone=True),
        nullable=True,
        comment="失效时间",
    )

    release_reason = Column(
        Enum(
            ReleaseReason,
            name="reservation_release_reason",
        ),
        nullable=True,
        comment="失效原因",
    )

    def mark_expired(self, reason: ReleaseReason, at):
        self.expired = True
        self.released_at = at
        self.release_reason = reason

    def __repr__(self):
        return (
            f"<Reservation(id={self.id}, product_id={self.product_id}, "
            f"actor_id={self.actor_id}, expired={self.expired})>"
        )



# 3️ 索引设计

UNFLAGGED_INDEX_NAME = "uq_reservation_product_unflagged"

# 同一商品最多一条未失效预占；并发竞争时由数据库拒绝后来者
Index(
    UNFLAGGED_INDEX_NAME,
    Reservation.product_id,
    unique=True,
    postgresql_where=Reservation.expired.is_(False),
    sqlite_where=Reservation.expired.is_(False),
)

# 清理任务按过期时间扫描
Index(
    "idx_reservation_expired_expires_at",
    Reservation.expired,
    Reservation.expires_at,
)

Index(
    "idx_reservation_actor_product",
    Reservation.actor_id,
    Reservation.product_id,
)
