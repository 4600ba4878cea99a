from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from app.core.database import Base


class UsageEvent(Base):
    __tablename__ = "usage_events"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True)
    endpoint = Column(String, index=True)
    generation_type = Column(String, index=True, nullable=True)
    generation_id = Column(String, index=True, nullable=True)
    credits_used = Column(Integer, default=0)
    status = Column(String, index=True, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    request_size_bytes = Column(Integer, nullable=True)
    extra = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
