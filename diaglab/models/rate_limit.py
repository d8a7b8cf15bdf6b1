from sqlalchemy import Column, Integer, String, DateTime

from diaglab.database import Base


class RateLimitCounter(Base):
    """Fixed-window request counter keyed by (action, identity)"""
    __tablename__ = "rate_limit_counters"

    action = Column(String(64), primary_key=True)
    identity = Column(String(255), primary_key=True)
    count = Column(Integer, default=0, nullable=False)
    window_start = Column(DateTime, nullable=False)
    blocked_until = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<RateLimitCounter {self.action}:{self.identity} count={self.count}>"
