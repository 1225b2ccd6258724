from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, Text

from ..database import Base


class User(Base):
    """SQLAlchemy model for application users."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    registration = Column(String)
    personal_email = Column(String)
    password_hash = Column(String, nullable=False)
    role = Column(String, default="student", index=True, nullable=False)
    status = Column(String, default="pending", index=True, nullable=False)
    rejection_reason = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def contact_email(self) -> str:
        return self.personal_email or self.email
