from sqlalchemy import Column, Integer, String, Date, DateTime, Numeric, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime

from counter_registry.models.base import Base


class Counter(Base):
    __tablename__ = "counters"
    __table_args__ = (
        UniqueConstraint("date", name="uq_counters_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    date = Column(Date, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)  # manager
    product_id = Column(Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True)
    # draft | platforms | reservations | final
    status = Column(String(20), nullable=False, default="draft")
    notes = Column(Text, nullable=True)
    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    manager = relationship("User")
    product = relationship("Product")
    staff = relationship("CounterUser", back_populates="counter", cascade="all, delete-orphan")
    metrics = relationship("CounterChannelMetric", back_populates="counter", cascade="all, delete-orphan")


class CounterUser(Base):
    __tablename__ = "counter_users"
    __table_args__ = (
        UniqueConstraint("counter_id", "user_id", name="uq_counter_users_counter_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    counter_id = Column(Integer, ForeignKey("counters.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(30), nullable=False)  # guide | assistant_manager
    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)

    counter = relationship("Counter", back_populates="staff")
    user = relationship("User")


class CounterChannelMetric(Base):
    __tablename__ = "counter_channel_metrics"
    __table_args__ = (
        UniqueConstraint(
            "counter_id", "channel_id", "kind", "addon_id", "tally_type", "period",
            name="uq_counter_channel_metrics_key",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    counter_id = Column(Integer, ForeignKey("counters.id", ondelete="CASCADE"), nullable=False, index=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False, index=True)
    kind = Column(String(20), nullable=False)  # people | addon | cash_payment
    addon_id = Column(Integer, ForeignKey("addons.id", ondelete="CASCADE"), nullable=True)
    tally_type = Column(String(20), nullable=False)  # booked | attended
    period = Column(String(20), nullable=True)  # before_cutoff | after_cutoff | NULL
    qty = Column(Numeric(12, 2), nullable=False, default=0)
    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    counter = relationship("Counter", back_populates="metrics")
