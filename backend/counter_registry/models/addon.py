from sqlalchemy import Column, Integer, String, Numeric, Boolean, DateTime
from datetime import datetime

from counter_registry.models.base import Base


class Addon(Base):
    __tablename__ = "addons"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    base_price = Column(Numeric(10, 2), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
