from sqlalchemy import Column, Integer, String, UniqueConstraint, Boolean, DateTime
from datetime import datetime

from counter_registry.models.base import Base


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("email", name="uq_users_email"),
    )

    id = Column(Integer, primary_key=True, index=True)
    first_name = Column(String(120), nullable=True)
    last_name = Column(String(120), nullable=True)
    email = Column(String(255), index=True, nullable=False)
    # user type slug: manager | assistant-manager | guide | pub-crawl-guide | ...
    role_slug = Column(String(50), nullable=True, index=True)
    role_name = Column(String(120), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    @property
    def full_name(self) -> str:
        return " ".join([self.first_name or "", self.last_name or ""]).strip()
