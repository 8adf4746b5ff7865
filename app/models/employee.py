from sqlalchemy import Boolean, Column, DateTime, Text
from sqlalchemy.sql import func

from app.database import Base


class Employee(Base):
    __tablename__ = "employees"

    user_id = Column(Text, primary_key=True)  # chat platform user id
    display_name = Column(Text, nullable=False)
    department = Column(Text, index=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
