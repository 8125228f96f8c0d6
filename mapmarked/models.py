# models.py
"""
SQLAlchemy models for the durable order store.

Both tables are keyed by the Stripe checkout session id, the only join key
between them.
"""

from sqlalchemy import BigInteger, Column, DateTime, String, Text

from mapmarked.db import Base


class PendingOrderRecord(Base):
    __tablename__ = "pending_orders"
    session_id = Column(String(255), primary_key=True)
    image_data = Column(Text, nullable=False)  # data URI or https URL
    city_name = Column(String(255), nullable=False, default="")
    state_name = Column(String(255), nullable=False, default="")
    theme_name = Column(String(255), nullable=False, default="")
    status = Column(String(32), nullable=False, default="awaiting_payment")
    failed_step = Column(String(32), nullable=True)
    last_error = Column(Text, nullable=True)
    printful_order_id = Column(BigInteger, nullable=True)
    printful_file_id = Column(BigInteger, nullable=True)
    created_at = Column(DateTime, nullable=False, index=True)  # naive UTC


class CompletedOrderRecord(Base):
    __tablename__ = "completed_orders"
    session_id = Column(String(255), primary_key=True)
    mockup_url = Column(String(2048), nullable=False, default="")
    printful_order_id = Column(BigInteger, nullable=False)
    created_at = Column(DateTime, nullable=False, index=True)  # naive UTC
