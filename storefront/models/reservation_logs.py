import enum

from sqlalchemy import (
    Column,
    String,
    TIMESTAMP,
    Enum,
    Index,
    func,
)
from storefront.db.base import Base
from storefront.models.product import ID_TYPE

# 1定义预占变更类型（数据库 ENUM）
class ChangeType(str, enum.Enum):
    RESERVE = "RESERVE"   # 新建预占
    REGRANT = "REGRANT"   # 同一顾客重复预占（幂等返回）
    RELEASE = "RELEASE"   # 主动释放
    SWEEP = "SWEEP"       # 过期清理
    CONSUME = "CONSUME"   # 支付成功转为已售
# 2️预占日志表
class ReservationLog(Base):
    __tablename__ = "reservation_logs"

    id = Column(
        ID_TYPE,
        primary_key=True,
        autoincrement=True,
    )

    product_id = Column(
        ID_TYPE,
        nullable=False,
        index=True,
        comment="商品ID",
    )

    actor_id = Column(
        String(64),
        nullable=True,
        index=True,
        comment="顾客标识",
    )

    reservation_id = Column(
        ID_TYPE,
        nullable=True,
        comment="预占记录ID",
    )

    change_type = Column(
        Enum(
            ChangeType,
            name="reservation_change_type",  # 重要！PostgreSQL ENUM 类型名
        ),
        nullable=False,
        comment="预占变更类型",
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    operator = Column(
        String(64),
        nullable=True,
        comment="操作人/服务名",
    )

    source = Column(
        String(50),
        nullable=True,
        comment="来源：storefront / sweep_job / checkout",
    )

# 3️组合索引（高频查询优化）


Index(
    "idx_reservation_logs_product_created_desc",
    ReservationLog.product_id,
    ReservationLog.created_at.desc(),
)
