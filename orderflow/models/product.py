# orderflow/models/product.py
# Модель товара каталога. Цена в центах, stock меняет только StockLedger.
from sqlalchemy import Column, Integer, String, Boolean, DateTime, CheckConstraint
from orderflow.db.base import Base, new_id, utcnow

class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        CheckConstraint("price >= 0", name="ck_products_price_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
