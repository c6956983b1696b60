from sqlalchemy import (
    Column,
    BigInteger,
    Integer,
    String,
    Numeric,
    Boolean,
    TIMESTAMP,
    CheckConstraint,
    Index,
    func,
)
from storefront.db.base import Base


# SQLite 只有 INTEGER PRIMARY KEY 才会自增
ID_TYPE = BigInteger().with_variant(Integer, "sqlite")


class Product(Base):
    __tablename__ = "products"

    id = Column(
        ID_TYPE,
        primary_key=True,
        autoincrement=True,
    )

    sku = Column(
        String(64),
        nullable=False,
        unique=True,
        comment="商品唯一SKU",
    )

    name = Column(
        String(255),
        nullable=False,
        comment="商品名称",
    )

    price = Column(
        Numeric(10, 2),
        nullable=False,
        server_default="0",
        comment="售价",
    )

    is_sold = Column(
        Boolean,
        nullable=False,
        default=False,
        server_default="0",
        comment="是否已售出（孤品，售出后不可再预占）",
    )

    # 以下三个字段只允许预占服务修改
    locked = Column(
        Boolean,
        nullable=False,
        default=False,
        server_default="0",
        comment="是否被预占",
    )

    locked_until = Column(
        TIMESTAMP(timezone=True),
        nullable=True,
        comment="预占到期时间",
    )

    locked_by = Column(
        String(64),
        nullable=True,
        comment="持有预占的顾客（会话ID或用户ID）",
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
        onupdate=func.now(),
    )

    # locked / locked_until / locked_by 三者同时有值或同时为空
    __table_args__ = (
        CheckConstraint(
            "(locked AND locked_until IS NOT NULL AND locked_by IS NOT NULL)"
            " OR (NOT locked AND locked_until IS NULL AND locked_by IS NULL)",
            name="ck_products_lock_fields_consistent",
        ),
    )

    def clear_lock(self):
        self.locked = False
        self.locked_until = None
        self.locked_by = None

    def __repr__(self):
        return f"<Product(id={self.id}, sku={self.sku}, locked_by={self.locked_by})>"


# -----------------------------
# 列表页按预占状态筛选
# -----------------------------
Index(
    "idx_products_locked_until",
    Product.locked,
    Product.locked_until,
)
