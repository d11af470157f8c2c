from sqlalchemy import Column, Integer, String, DateTime, Numeric, Index
from sqlalchemy.sql import func
from dealfinder.database import Base


class PriceSampleRow(Base):
    """
    One observed price for a route. The rolling baseline is rebuilt from the
    rows inside the history window when a route is first touched.
    """
    __tablename__ = "price_samples"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)

    origin = Column(String(8), nullable=False)
    destination = Column(String(8), nullable=False)

    price = Column(Numeric(14, 4), nullable=False)
    observed_at = Column(DateTime, nullable=False, index=True)

    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        Index('ix_price_samples_route', 'origin', 'destination', 'observed_at'),
    )

    def __repr__(self) -> str:
        return f"<PriceSampleRow {self.origin}-{self.destination}: {self.price} at {self.observed_at}>"
