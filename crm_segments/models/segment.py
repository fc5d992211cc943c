"""
Segment Models

- Segment definitions with typed, pre-validated criteria (JSON)
- Published membership rows, replaced wholesale by batch passes and
  adjusted row-by-row by incremental passes
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, ForeignKey, JSON, UniqueConstraint
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from crm_segments.database import Base


class CustomerSegment(Base):
    """
    Customer segment definition and its last published count.

    ``customer_count``, ``updated_at`` and the ``last_evaluation_*`` columns
    belong to the evaluation publish path; authoring never writes them.
    """

    __tablename__ = "customer_segments"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, unique=True)
    description = Column(Text)

    # Compiled criteria, e.g.
    # {
    #   "logic": "AND",
    #   "rules": [
    #     {"field": "lifetimeValue", "operator": "GREATER_THAN",
    #      "value": {"kind": "NUMBER", "value": 10000.0}, "data_type": "NUMBER"}
    #   ]
    # }
    criteria = Column(JSON, nullable=False)

    # Settings
    is_active = Column(Boolean, default=True, nullable=False)
    is_auto_updated = Column(Boolean, default=True, nullable=False)

    # Evaluation results
    customer_count = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime(timezone=True))
    last_evaluation_status = Column(String(20), default="pending", nullable=False)  # pending, ok, failed
    last_evaluation_error = Column(Text)
    last_evaluated_epoch = Column(Integer)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    members = relationship("SegmentMember", back_populates="segment", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<CustomerSegment id={self.id} name='{self.name}' count={self.customer_count}>"


class SegmentMember(Base):
    """A customer currently in a segment."""

    __tablename__ = "customer_segment_members"
    __table_args__ = (UniqueConstraint("segment_id", "customer_id", name="uq_segment_member"),)

    id = Column(Integer, primary_key=True, index=True)
    segment_id = Column(
        Integer, ForeignKey("customer_segments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    customer_id = Column(Integer, nullable=False, index=True)
    entered_at = Column(DateTime(timezone=True), server_default=func.now())

    segment = relationship("CustomerSegment", back_populates="members")
