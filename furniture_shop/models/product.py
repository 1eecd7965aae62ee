"""
SQLAlchemy Product model (stock-bearing fields consumed by orders)
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, Text, CheckConstraint

from furniture_shop.database import Base
from furniture_shop.time_utils import utcnow


class Product(Base):
    """Product database model"""
    
    __tablename__ = "products"
    
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(255), nullable=False, index=True)
    description = Column(Text, nullable=True)
    price = Column(Float, nullable=False)
    sale_price = Column(Float, nullable=True)
    stock = Column(Integer, nullable=False, default=0)
    image_url = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    
    # Constraints
    __table_args__ = (
        CheckConstraint('price >= 0', name='check_price_positive'),
        CheckConstraint('stock >= 0', name='check_stock_non_negative'),
        CheckConstraint('sale_price IS NULL OR sale_price < price', name='check_sale_price_below_price'),
    )
    
    @property
    def effective_price(self) -> float:
        """Sale price when present and lower than the list price"""
        if self.sale_price is not None and self.sale_price < self.price:
            return self.sale_price
        return self.price
    
    def __repr__(self):
        return f"<Product(id={self.id}, name='{self.name}', price={self.price}, stock={self.stock})>"
