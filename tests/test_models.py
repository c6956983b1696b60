"""模型单元测试"""
import pytest
from datetime import timedelta
from decimal import Decimal
from sqlalchemy.exc import IntegrityError

from storefront.db import init_db
from storefront.db.base import Base
from storefront.models.product import Product
from storefront.models.reservations import Reservation, ReleaseReason
from storefront.models.reservation_logs import ReservationLog, ChangeType
from conftest import T0


class TestModels:
    """数据模型测试类"""

    def test_product_model(self, db_session):
        """测试商品模型"""
        product = Product(sku="BEAR001", name="钩针小熊", price=Decimal("36.50"))
        db_session.add(product)
        db_session.commit()

        saved_product = db_session.query(Product).first()
        assert saved_product.id is not None
        assert saved_product.sku == "BEAR001"
        assert saved_product.price == Decimal("36.50")
        assert saved_product.is_sold is False
        assert saved_product.locked is False
        assert saved_product.locked_by is None
        assert saved_product.created_at is not None
        assert saved_product.updated_at is not None

    def test_product_sku_unique(self, db_session):
        """测试 SKU 唯一约束"""
        db_session.add(Product(sku="BEAR001", name="钩针小熊"))
        db_session.commit()

        db_session.add(Product(sku="BEAR001", name="另一只小熊"))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_lock_fields_check_constraint(self, db_session):
        """测试锁字段必须同时有值或同时为空"""
        db_session.add(Product(sku="BEAR002", name="钩针小熊", locked=True, locked_by="alice"))

        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_clear_lock(self, db_session):
        """测试清除商品锁字段"""
        product = Product(
            sku="BEAR003",
            name="钩针小熊",
            locked=True,
            locked_until=T0,
            locked_by="alice",
        )
        db_session.add(product)
        db_session.commit()

        product.clear_lock()
        db_session.commit()

        assert product.locked is False
        assert product.locked_until is None
        assert product.locked_by is None

    def test_reservation_model(self, db_session, make_product):
        """测试预占模型"""
        product = make_product()
        reservation = Reservation(
            actor_id="alice",
            product_id=product.id,
            expires_at=T0 + timedelta(minutes=15),
        )
        db_session.add(reservation)
        db_session.commit()

        saved = db_session.query(Reservation).first()
        assert saved.actor_id == "alice"
        assert saved.expired is False
        assert saved.created_at is not None
        assert saved.release_reason is None

        saved.mark_expired(ReleaseReason.SWEPT, T0)
        db_session.commit()
        assert db_session.query(Reservation).first().release_reason == ReleaseReason.SWEPT

    def test_one_unflagged_reservation_per_product(self, db_session, make_product):
        """测试部分唯一索引：同一商品只允许一条未失效预占"""
        product = make_product()
        db_session.add(Reservation(actor_id="alice", product_id=product.id, expires_at=T0))
        db_session.commit()

        db_session.add(Reservation(actor_id="bob", product_id=product.id, expires_at=T0))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

        # 已失效的记录不受限制
        db_session.add(Reservation(
            actor_id="bob",
            product_id=product.id,
            expires_at=T0,
            expired=True,
            release_reason=ReleaseReason.RELEASED,
        ))
        db_session.commit()
        assert db_session.query(Reservation).count() == 2

    def test_reservation_log_model(self, db_session):
        """测试预占日志模型"""
        log = ReservationLog(
            product_id=1,
            actor_id="alice",
            reservation_id=10,
            change_type=ChangeType.RESERVE,
            operator="actor_alice",
            source="storefront",
        )
        db_session.add(log)
        db_session.commit()

        saved_log = db_session.query(ReservationLog).first()
        assert saved_log.change_type == ChangeType.RESERVE
        assert saved_log.operator == "actor_alice"
        assert saved_log.created_at is not None

    def test_init_db_creates_tables(self, tmp_path):
        """测试建表"""
        from sqlalchemy import create_engine, inspect

        engine = create_engine(f"sqlite:///{tmp_path / 'init.db'}")
        init_db(engine)

        tables = set(inspect(engine).get_table_names())
        assert {"products", "cart_reservations", "reservation_logs"} <= tables
        assert set(Base.metadata.tables) <= tables
        engine.dispose()
