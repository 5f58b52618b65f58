from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, String, func
from sqlalchemy.dialects.postgresql import UUID

from kfactor_api.db.base import Base


class PersonaEnum(str, Enum):
    STUDENT = "student"
    PARENT = "parent"
    TUTOR = "tutor"


class User(Base):
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    email = Column(String, nullable=False, unique=True, index=True)
    display_name = Column(String, nullable=True)
    persona = Column(
        String(length=12),
        nullable=False,
        default=PersonaEnum.STUDENT.value,
        server_default=PersonaEnum.STUDENT.value,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
