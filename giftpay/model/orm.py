from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)


Base = declarative_base()

# canonical purchase states
PENDING = "pending"
CONFIRMED = "confirmed"
CANCELLED = "cancelled"
REFUNDED = "refunded"
PAYMENT_STATUSES = (PENDING, CONFIRMED, CANCELLED, REFUNDED)


# ----------------------------
# ORM models
# ----------------------------
class Gift(Base):
    __tablename__ = "gifts"
    __table_args__ = (
        CheckConstraint("purchase_count >= 0", name="gift_count_nonneg"),
        CheckConstraint("purchase_limit >= 1", name="gift_limit_positive"),
    )
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    # only the webhook reconciler and the direct purchase path touch these
    purchase_count = Column(Integer, nullable=False, default=0)
    purchase_limit = Column(Integer, nullable=False, default=1)


class Purchase(Base):
    __tablename__ = "purchases"
    # a multi-item billing shares one gateway id across its gift rows
    __table_args__ = (
        UniqueConstraint("external_payment_id", "gift_id",
                         name="purchase_payment_gift_unique"),
    )
    id = Column(String, primary_key=True)
    gift_id = Column(String, ForeignKey("gifts.id"), nullable=False,
                     index=True)
    purchaser_name = Column(String, nullable=False)
    purchaser_email = Column(String, nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)

    # pending | confirmed | cancelled | refunded
    payment_status = Column(String, nullable=False, default=PENDING)
    external_payment_id = Column(String, nullable=True, index=True)
    payment_gateway = Column(String, nullable=True)
    purchased_at = Column(Float, nullable=False)


class WebhookLog(Base):
    __tablename__ = "webhook_logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    gateway = Column(String, nullable=False)
    event = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    success = Column(Boolean, nullable=False)
    error = Column(Text, nullable=True)
    received_at = Column(Float, nullable=False)
