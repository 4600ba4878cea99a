from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from app.core.database import Base


class CreditExpiration(Base):
    __tablename__ = "credit_expirations"

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid4()))
    user_id = Column(String, index=True, nullable=False)
    amount = Column(Integer, nullable=False)
    consumed_amount = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), index=True, nullable=False)
    reason = Column(String, index=True, default="upgrade_bonus")
    status = Column(String, index=True, default="scheduled")
    lot_metadata = Column("metadata", JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
