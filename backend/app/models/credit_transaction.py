from sqlalchemy import Column, DateTime, Index, Integer, String, Text, text
from sqlalchemy.sql import func

from app.core.database import Base

PAYMENT_REFERENCES_WHERE = (
    "reference_type IN ('subscription_invoice', 'credit_package', 'upgrade_bonus') "
    "AND reference_id IS NOT NULL"
)


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (
        # spent/refund rows are unique per reference.
        Index(
            "uq_credit_transactions_user_type_reference",
            "user_id",
            "type",
            "reference_id",
            unique=True,
            sqlite_where=text("type IN ('spent', 'refund') AND reference_id IS NOT NULL"),
            postgresql_where=text("type IN ('spent', 'refund') AND reference_id IS NOT NULL"),
        ),
        # webhook grants are unique per provider invoice or checkout session.
        Index(
            "uq_credit_transactions_user_type_payment_reference",
            "user_id",
            "type",
            "reference_id",
            unique=True,
            sqlite_where=text(PAYMENT_REFERENCES_WHERE),
            postgresql_where=text(PAYMENT_REFERENCES_WHERE),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    type = Column(String, index=True, nullable=False)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    description = Column(Text)
    reference_id = Column(String, index=True, nullable=True)
    reference_type = Column(String, index=True, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
