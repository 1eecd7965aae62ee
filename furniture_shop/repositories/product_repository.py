"""
Product Repository - read access for catalog lookups
"""
from typing import Optional
from sqlalchemy.orm import Session

from furniture_shop.models.product import Product


class ProductRepository:
    """Repository for Product reads; stock writes go through StockLedger"""
    
    def __init__(self, db: Session):
        self.db = db
    
    def get_by_id(self, product_id: int) -> Optional[Product]:
        """Get product by ID"""
        return self.db.query(Product).filter(Product.id == product_id).first()
    
    def get_stock(self, product_id: int) -> Optional[int]:
        """Current stock straight from the database, bypassing the identity map"""
        row = self.db.query(Product.stock).filter(Product.id == product_id).first()
        return row[0] if row else None