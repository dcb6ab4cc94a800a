from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, UniqueConstraint, Boolean, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime

from counter_registry.models.base import Base


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    status = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    product_addons = relationship(
        "ProductAddon",
        back_populates="product",
        order_by="ProductAddon.sort_order",
        cascade="all, delete-orphan",
    )


class ProductAddon(Base):
    __tablename__ = "product_addons"
    __table_args__ = (
        UniqueConstraint("product_id", "addon_id", name="uq_product_addons_product_addon"),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    addon_id = Column(Integer, ForeignKey("addons.id", ondelete="CASCADE"), nullable=False, index=True)
    max_per_attendee = Column(Integer, nullable=True)
    price_override = Column(Numeric(10, 2), nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)

    product = relationship("Product", back_populates="product_addons")
    addon = relationship("Addon")
