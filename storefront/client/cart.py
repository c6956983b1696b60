"""客户端购物车状态

购物车只用于展示，以服务端预占为准；加载时必须先对账。
"""

import json
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from storefront.core.config import settings
from storefront.core.expiry import as_utc, is_expired, time_remaining

logger = logging.getLogger(__name__)


class CartEntry(BaseModel):
    """购物车条目（价格为加入时的快照）"""
    product_id: int = Field(..., gt=0)
    actor_id: str = Field(..., min_length=1, max_length=64)
    reservation_id: int
    name: str = ""
    price: Decimal = Decimal("0")
    expires_at: datetime

    @field_validator("expires_at")
    @classmethod
    def _normalize_expiry(cls, value: datetime) -> datetime:
        return as_utc(value)

    def time_remaining(self, now: datetime) -> timedelta:
        return time_remaining(self.expires_at, now)

    def is_expired(self, now: datetime) -> bool:
        return is_expired(self.expires_at, now)


class CartSnapshot(BaseModel):
    """持久化格式"""
    actor_id: str
    entries: List[CartEntry] = Field(default_factory=list)


class CartState:
    """购物车容器，按商品ID索引，同一商品只会出现一次"""

    def __init__(self, actor_id: str, entries: Optional[List[CartEntry]] = None):
        self.actor_id = actor_id
        self._entries: Dict[int, CartEntry] = {}
        for entry in entries or []:
            self.add(entry)

    def add(self, entry: CartEntry) -> CartEntry:
        self._entries[entry.product_id] = entry
        return entry

    def remove(self, product_id: int) -> Optional[CartEntry]:
        return self._entries.pop(product_id, None)

    def clear(self) -> List[CartEntry]:
        removed = list(self._entries.values())
        self._entries.clear()
        return removed

    def get(self, product_id: int) -> Optional[CartEntry]:
        return self._entries.get(product_id)

    @property
    def entries(self) -> List[CartEntry]:
        return list(self._entries.values())

    @property
    def product_ids(self) -> List[int]:
        return list(self._entries)

    @property
    def item_count(self) -> int:
        return len(self._entries)

    @property
    def subtotal(self) -> Decimal:
        return sum((entry.price for entry in self._entries.values()), Decimal("0"))

    def __contains__(self, product_id: int) -> bool:
        return product_id in self._entries

    def __iter__(self) -> Iterator[CartEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self._entries)

    def to_snapshot(self) -> CartSnapshot:
        return CartSnapshot(actor_id=self.actor_id, entries=self.entries)

    @classmethod
    def from_snapshot(cls, snapshot: CartSnapshot) -> "CartState":
        return cls(snapshot.actor_id, snapshot.entries)


class CartStorage:
    """购物车本地存储（JSON 文件）"""

    def __init__(self, path: Union[str, Path] = settings.CART_STORAGE_PATH):
        self.path = Path(path)

    def load(self) -> Optional[CartState]:
        """读取购物车，文件不存在或内容损坏时返回 None"""
        if not self.path.exists():
            return None
        try:
            snapshot = CartSnapshot.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning(f"购物车文件无法读取，已忽略: path={self.path}, error={str(e)}")
            return None
        return CartState.from_snapshot(snapshot)

    def save(self, cart: CartState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = cart.to_snapshot().model_dump(mode="json")
        self.path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        logger.debug(f"购物车已保存: actor_id={cart.actor_id}, items={cart.item_count}")

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
