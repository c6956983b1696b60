from .base import Base
from .session import engine
# db/init_db.py

from storefront.models import *


def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)
# Export for convenience
__all__ = ["Base", "engine", "init_db"]
