"""
Read-only product catalog and substring search.
"""
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from storefront.exceptions import RemoteUnavailableError
from storefront.models import Product, SearchResult
from storefront.redis_client import RedisClient, get_redis_client

logger = logging.getLogger(__name__)

PLACEHOLDER_IMAGE = "https://placehold.co/600x400.png"

DEFAULT_PRODUCTS: List[Product] = [
    Product(
        id="1",
        name="Quantum Laptop XG",
        description="Next-generation laptop with AI-powered processing and a stunning 16-inch display.",
        price=Decimal("1499.99"),
        image_url=PLACEHOLDER_IMAGE,
        category="Laptops",
    ),
    Product(
        id="2",
        name="Stealth Pro Keyboard",
        description="Mechanical keyboard with customizable RGB lighting and ultra-responsive keys.",
        price=Decimal("129.50"),
        image_url=PLACEHOLDER_IMAGE,
        category="Peripherals",
    ),
    Product(
        id="3",
        name="Aura Wireless Mouse",
        description="Ergonomic wireless mouse with precision tracking and long battery life.",
        price=Decimal("79.00"),
        image_url=PLACEHOLDER_IMAGE,
        category="Peripherals",
    ),
    Product(
        id="4",
        name="Visionary 4K Monitor",
        description="27-inch 4K UHD monitor with vibrant colors and crisp details.",
        price=Decimal("450.00"),
        image_url=PLACEHOLDER_IMAGE,
        category="Monitors",
    ),
    Product(
        id="5",
        name="Nova Smart Hub",
        description="Centralize your smart home devices with this intuitive and powerful smart hub.",
        price=Decimal("199.99"),
        image_url=PLACEHOLDER_IMAGE,
        category="Smart Home",
    ),
    Product(
        id="6",
        name="Echo Sound System",
        description="Immersive 5.1 surround sound system for your home theater.",
        price=Decimal("399.00"),
        image_url=PLACEHOLDER_IMAGE,
        category="Audio",
    ),
    Product(
        id="7",
        name="Guardian Security Cam",
        description="Smart security camera with night vision and motion alerts.",
        price=Decimal("99.99"),
        image_url=PLACEHOLDER_IMAGE,
        category="Smart Home",
    ),
    Product(
        id="8",
        name="CyberWorkstation Pro",
        description="High-performance desktop workstation for demanding workloads.",
        price=Decimal("2899.00"),
        image_url=PLACEHOLDER_IMAGE,
        category="Desktops",
    ),
]


class ProductCatalog(ABC):
    """Read-only provider of product records."""

    @abstractmethod
    async def get_product_by_id(self, product_id: str) -> Optional[Product]:
        pass

    @abstractmethod
    async def list_all_products(self) -> List[Product]:
        pass


class StaticProductCatalog(ProductCatalog):
    """In-process catalog"""

    def __init__(self, products: Optional[Iterable[Product]] = None):
        source = DEFAULT_PRODUCTS if products is None else products
        self._products: Dict[str, Product] = {p.id: p for p in source}

    async def get_product_by_id(self, product_id: str) -> Optional[Product]:
        return self._products.get(product_id)

    async def list_all_products(self) -> List[Product]:
        return list(self._products.values())


class RedisProductCatalog(ProductCatalog):
    """Catalog stored in a Redis hash of product id -> JSON"""

    PRODUCTS_KEY = "products"

    def __init__(self, redis_client: Optional[RedisClient] = None):
        self.redis = redis_client or get_redis_client()

    async def seed(self, products: Iterable[Product] = DEFAULT_PRODUCTS) -> int:
        count = 0
        for product in products:
            await self.redis.hset(self.PRODUCTS_KEY, product.id, product.model_dump_json())
            count += 1
        return count

    async def seed_if_empty(self, products: Iterable[Product] = DEFAULT_PRODUCTS) -> int:
        """Seed a fresh deployment; an existing catalog is left alone"""
        if await self.redis.hlen(self.PRODUCTS_KEY):
            return 0
        count = await self.seed(products)
        logger.info(f"Seeded empty catalog with {count} product(s)")
        return count

    async def get_product_by_id(self, product_id: str) -> Optional[Product]:
        raw = await self.redis.hget(self.PRODUCTS_KEY, product_id)
        if raw is None:
            return None
        try:
            return Product.model_validate_json(raw)
        except ValueError as e:
            logger.warning(f"Failed to parse product {product_id}: {e}")
            return None

    async def list_all_products(self) -> List[Product]:
        try:
            items = await self.redis.hgetall(self.PRODUCTS_KEY)
        except RemoteUnavailableError as e:
            logger.error(f"Error fetching products: {e}")
            return []

        products = []
        for product_id, raw in items.items():
            try:
                products.append(Product.model_validate_json(raw))
            except ValueError as e:
                logger.warning(f"Failed to parse product {product_id}: {e}")
        return sorted(products, key=lambda p: p.id)


class QueryRefiner(ABC):
    """Black-box rewrite of a user's search query (typo fixes, intent)."""

    @abstractmethod
    async def refine(self, query: str) -> str:
        pass


def _matches(product: Product, needle: str) -> bool:
    haystacks = (product.name, product.description, product.category or "")
    return any(needle in text.lower() for text in haystacks)


async def search_products(
    catalog: ProductCatalog,
    query: str,
    refiner: Optional[QueryRefiner] = None
) -> SearchResult:
    """
    Filter the catalog by case-insensitive substring.

    When a refiner is given the query is rewritten first; if the refiner
    fails or returns nothing the raw query is used.
    """
    query = (query or "").strip()
    effective = query
    refined: Optional[str] = None

    if query and refiner is not None:
        try:
            candidate = (await refiner.refine(query) or "").strip()
        except Exception as e:
            logger.warning(f"Query refinement failed, using original query: {e}")
        else:
            if candidate and candidate != query:
                refined = candidate
                effective = candidate

    products = await catalog.list_all_products()
    if effective:
        needle = effective.lower()
        products = [p for p in products if _matches(p, needle)]

    return SearchResult(query=query, refined_query=refined, products=products)
