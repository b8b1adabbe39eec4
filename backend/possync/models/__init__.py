from .tenancy import Store
from .security import SecurityEvent
from .records import (
    SyncRecordMixin, Product, Category, Customer, Employee, Credit, Sale, Shift, StockMovement,
    MODEL_BY_ENTITY, model_for,
)

__all__ = [
    'Store', 'SecurityEvent', 'SyncRecordMixin',
    'Product', 'Category', 'Customer', 'Employee', 'Credit', 'Sale', 'Shift', 'StockMovement',
    'MODEL_BY_ENTITY', 'model_for',
]
