from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from app.core.database import Base


class Generation(Base):
    __tablename__ = "generations"

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid4()))
    user_id = Column(String, index=True, nullable=False)
    generation_type = Column(String, index=True, nullable=False)
    status = Column(String, index=True, default="pending")
    credits_used = Column(Integer, nullable=True)
    storage_key = Column(String, nullable=True)
    storage_url = Column(Text, nullable=True)
    file_size = Column(Integer, nullable=True)
    content_type = Column(String, nullable=True)
    prompt = Column(Text, nullable=True)
    settings = Column(JSON, nullable=True)
    provider_job_id = Column(String, index=True, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
