from sqlalchemy import Column, Integer, String, DateTime
from dealfinder.database import Base


class SignalUsage(Base):
    """Free-tier signal counter for one identity."""
    __tablename__ = "signal_usage"

    id = Column(Integer, primary_key=True, index=True)
    identity_id = Column(String(128), nullable=False, unique=True)
    period_start = Column(DateTime, nullable=False)
    count = Column(Integer, nullable=False, default=0)
    first_used_at = Column(DateTime, nullable=True)
    last_used_at = Column(DateTime, nullable=True)
