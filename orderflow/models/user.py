# orderflow/models/user.py
# Модель профиля покупателя/администратора: email, role, blacklisted.
from sqlalchemy import Column, String, Boolean, DateTime, Enum
from orderflow.db.base import Base, new_id, utcnow
import enum

class RoleEnum(str, enum.Enum):
    customer = "customer"
    admin = "admin"

class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)
    role = Column(Enum(RoleEnum), default=RoleEnum.customer, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    blacklisted = Column(Boolean, default=False)
