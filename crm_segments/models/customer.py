from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, JSON
from sqlalchemy.sql import func
from crm_segments.database import Base


class CustomerLifecycle(Base):
    """
    Lifecycle and health attributes of a customer.

    This is the read side the segment engine queries; rows are maintained by
    the customer lifecycle module and never written by segmentation.
    """

    __tablename__ = "customer_lifecycles"

    id = Column(Integer, primary_key=True, index=True)

    # Status
    current_stage = Column(String(20), index=True)  # LEAD, PROSPECT, ONBOARDING, ACTIVE, ...
    health_score = Column(String(20))  # EXCELLENT, GOOD, FAIR, POOR, CRITICAL
    engagement_level = Column(String(20))  # HIGH, MEDIUM, LOW, INACTIVE
    customer_type = Column(String(20))  # BUSINESS, INDIVIDUAL

    # Metrics
    lifetime_value = Column(Float)
    days_as_customer = Column(Integer)
    risk_score = Column(Float)  # 0-100
    churn_probability = Column(Float)  # 0-100

    # Flags
    is_high_value = Column(Boolean)
    is_at_risk = Column(Boolean)
    requires_attention = Column(Boolean)

    tags = Column(JSON)  # ["vip", "b2b"]
    last_activity_date = Column(DateTime(timezone=True))

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return f"<CustomerLifecycle id={self.id} stage={self.current_stage}>"
