from ._schema import SCHEMA_VERSION, SCHEMA_SQL
from .providers import ProviderRepo
from .product_categories import ProductCategoryRepo
from .offers import OfferRepo
from .resources import ResourceRepo
from .processed_txs import BLOCK_SENTINEL_HASH, ProcessedTxRepo
from .manager import StorageManager

__all__ = [
    "SCHEMA_VERSION",
    "SCHEMA_SQL",
    "BLOCK_SENTINEL_HASH",
    "ProviderRepo",
    "ProductCategoryRepo",
    "OfferRepo",
    "ResourceRepo",
    "ProcessedTxRepo",
    "StorageManager",
]
