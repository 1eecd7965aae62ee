"""
Stock Ledger - atomic per-product stock adjustments
"""
import logging
from sqlalchemy.orm import Session

from furniture_shop.errors import InsufficientStock, NotFound, ValidationError
from furniture_shop.models.product import Product

logger = logging.getLogger(__name__)


class StockLedger:
    """
    Authoritative stock counter for products.
    
    Every adjustment is a single conditional UPDATE, so concurrent
    reservations of the same product can never oversell it.
    """
    
    def __init__(self, db: Session):
        self.db = db
    
    def reserve(self, product_id: int, quantity: int, commit: bool = True) -> None:
        """
        Decrement stock by `quantity` if at least that much is available
        
        Raises:
            InsufficientStock: If requested quantity exceeds available stock
            NotFound: If product does not exist
        """
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        
        updated = self.db.query(Product).filter(
            Product.id == product_id,
            Product.stock >= quantity
        ).update({Product.stock: Product.stock - quantity}, synchronize_session=False)
        
        if updated != 1:
            product = self.db.query(Product).populate_existing().filter(
                Product.id == product_id
            ).first()
            if not product:
                raise NotFound(f"Product {product_id} not found")
            raise InsufficientStock(product.id, product.name, quantity, product.stock)
        
        if commit:
            self.db.commit()
        logger.debug("Reserved %s unit(s) of product %s", quantity, product_id)
    
    def release(self, product_id: int, quantity: int, commit: bool = True) -> None:
        """Return `quantity` units of a prior reservation to stock"""
        updated = self.db.query(Product).filter(
            Product.id == product_id
        ).update({Product.stock: Product.stock + quantity}, synchronize_session=False)
        
        if updated != 1:
            # Product deleted since the reservation; nothing to return it to
            logger.warning("Cannot release %s unit(s): product %s no longer exists", quantity, product_id)
        
        if commit:
            self.db.commit()
        logger.debug("Released %s unit(s) of product %s", quantity, product_id)
