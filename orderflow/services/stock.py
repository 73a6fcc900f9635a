# orderflow/services/stock.py
# StockLedger: списание и возврат остатков синхронно с переходами заказа.
# Все изменения идут атомарным условный UPDATE, без чтения-потом-записи.

import logging

from orderflow.core.errors import InsufficientStock, NotFound
from orderflow.db.store import OrderStore

logger = logging.getLogger(__name__)


class StockLedger:
    """Единственный писатель Product.stock для переходов заказа."""

    def decrement(self, store: OrderStore, product_id: str, quantity: int) -> int:
        """
        Списывает quantity. Возвращает новый остаток.

        Raises:
            InsufficientStock: остаток ушёл бы в минус (ничего не списано)
            NotFound: товара нет
        """
        if quantity <= 0:
            raise ValueError("quantity must be positive")
        new_level = store.conditional_update_stock(product_id, -quantity, min_resulting=0)
        if new_level is None:
            available = store.stock_level(product_id)
            if available is None:
                raise NotFound(f"Product {product_id} not found", product_id=product_id)
            logger.warning(
                f"Stock decrement refused for product {product_id}: requested={quantity} available={available}"
            )
            raise InsufficientStock(product_id, quantity, available)
        logger.info(f"Stock decremented: product={product_id} qty={quantity} new_stock={new_level}")
        return new_level

    def restore(self, store: OrderStore, product_id: str, quantity: int) -> int:
        """Возвращает quantity на склад. Возвращает новый остаток."""
        if quantity <= 0:
            raise ValueError("quantity must be positive")
        new_level = store.conditional_update_stock(product_id, quantity, min_resulting=0)
        if new_level is None:
            raise NotFound(f"Product {product_id} not found", product_id=product_id)
        logger.info(f"Stock restored: product={product_id} qty={quantity} new_stock={new_level}")
        return new_level
