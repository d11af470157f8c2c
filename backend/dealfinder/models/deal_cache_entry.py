from sqlalchemy import Column, Integer, String, DateTime, Text
from dealfinder.database import Base


class DealCacheEntry(Base):
    __tablename__ = "deal_cache_entries"

    id = Column(Integer, primary_key=True, index=True)
    cache_key = Column(String(128), nullable=False, unique=True)
    origin = Column(String(8), nullable=True, index=True)
    payload = Column(Text, nullable=False)  # JSON-encoded deal list
    written_at = Column(DateTime, nullable=False)
    ttl_seconds = Column(Integer, nullable=False)
