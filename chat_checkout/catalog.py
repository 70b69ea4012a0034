"""
Product catalog collaborators.

JsonProductCatalog serves products straight from data/products.json.
ChromaProductCatalog keeps the same products in a ChromaDB collection with
OpenAI embeddings. The assistant uses its search() to pick the product when
a visitor opens the conversation with free text instead of a product id.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import chromadb
import openai
from chromadb.config import Settings

from chat_checkout import config
from chat_checkout.models import Product, StockStatus

logger = logging.getLogger(__name__)

# Collection name for products
PRODUCTS_COLLECTION = "products"


def load_products_from_file(file_path: Optional[str] = None) -> List[Product]:
    """
    Load products from JSON file.

    Args:
        file_path: Path to products JSON file

    Returns:
        List of validated Product objects; invalid entries are skipped
    """
    path = Path(file_path or config.PRODUCTS_PATH)

    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    products = []
    for item in data.get('products', []):
        try:
            products.append(Product(**item))
        except ValueError as e:
            logger.warning("Skipping invalid product %s: %s", item.get('product_id', 'unknown'), e)

    return products


class JsonProductCatalog:
    """In-memory catalog loaded once from a products JSON file."""

    def __init__(self, products: Optional[List[Product]] = None, file_path: Optional[str] = None):
        if products is None:
            products = load_products_from_file(file_path)
        self._products: Dict[str, Product] = {p.product_id: p for p in products}

    def get(self, product_id: str) -> Optional[Product]:
        return self._products.get(product_id)

    def all(self) -> List[Product]:
        return list(self._products.values())


class ChromaProductCatalog:
    """
    Catalog stored in a ChromaDB collection.

    Handles embedding generation via OpenRouter/OpenAI and semantic
    similarity search; get() reads products back from the stored metadata.
    """

    def __init__(
        self,
        persist_directory: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        embedding_model: Optional[str] = None,
        chroma_client: Any = None,
        openai_client: Any = None,
    ):
        """
        Initialize the catalog.

        Args:
            persist_directory: Path to store the vector database
            api_key: OpenAI/OpenRouter API key
            base_url: API base URL (OpenRouter by default)
            embedding_model: Model to use for embeddings
            chroma_client: Pre-built ChromaDB client (a persistent one is created otherwise)
            openai_client: Pre-built OpenAI client (one is created otherwise)
        """
        self.persist_directory = persist_directory or config.VECTOR_STORE_PATH
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL

        if openai_client is None:
            api_key = api_key or config.OPENAI_API_KEY
            if not api_key:
                raise ValueError("OPENAI_API_KEY environment variable is required")
            openai_client = openai.OpenAI(
                api_key=api_key,
                base_url=base_url or config.OPENAI_BASE_URL
            )
        self.openai_client = openai_client

        if chroma_client is None:
            chroma_client = chromadb.PersistentClient(
                path=self.persist_directory,
                settings=Settings(anonymized_telemetry=False)
            )
        self.chroma_client = chroma_client

        self.collection = self.chroma_client.get_or_create_collection(
            name=PRODUCTS_COLLECTION,
            metadata={"hnsw:space": "cosine"}
        )

    def generate_embeddings(self, texts: List[str]) -> List[List[float]]:
        response = self.openai_client.embeddings.create(
            model=self.embedding_model,
            input=texts
        )
        return [item.embedding for item in response.data]

    @staticmethod
    def product_to_document(product: Product) -> str:
        """Rich text representation of a product for embedding."""
        stock_text = {
            StockStatus.IN_STOCK: "Available and in stock",
            StockStatus.LOW_STOCK: "Low stock - limited availability",
            StockStatus.OUT_OF_STOCK: "Currently out of stock"
        }.get(product.stock_status, "Unknown availability")

        return f"""
Product: {product.name}
Product ID: {product.product_id}
Category: {product.category}
Price: {product.price:.0f} FCFA
Availability: {stock_text}
Description: {product.description}
        """.strip()

    @staticmethod
    def _metadata(product: Product) -> Dict[str, Any]:
        return {
            "product_id": product.product_id,
            "name": product.name,
            "description": product.description,
            "price": product.price,
            "category": product.category,
            "stock_status": product.stock_status.value,
            "stock_quantity": product.stock_quantity
        }

    @staticmethod
    def _product_from_metadata(metadata: Dict[str, Any]) -> Product:
        return Product(**metadata)

    def index_products(self, products: List[Product], batch_size: int = 20) -> int:
        """
        Upsert products and their embeddings into the collection.

        Returns:
            Number of products indexed
        """
        if not products:
            logger.info("No products to index")
            return 0

        documents = [self.product_to_document(p) for p in products]
        embeddings: List[List[float]] = []

        # Batches to stay under the embedding API input limits
        for i in range(0, len(documents), batch_size):
            embeddings.extend(self.generate_embeddings(documents[i:i + batch_size]))
            logger.info("Embedded %s/%s products", min(i + batch_size, len(documents)), len(documents))

        self.collection.upsert(
            documents=documents,
            embeddings=embeddings,
            metadatas=[self._metadata(p) for p in products],
            ids=[p.product_id for p in products]
        )
        return len(products)

    def get(self, product_id: str) -> Optional[Product]:
        results = self.collection.get(ids=[product_id], include=["metadatas"])
        if not results['ids']:
            return None
        return self._product_from_metadata(results['metadatas'][0])

    def search(
        self,
        query: str,
        n_results: int = 5,
        in_stock_only: bool = False
    ) -> List[Tuple[Product, float]]:
        """
        Search for products using semantic similarity.

        Returns:
            (product, relevance score) pairs, most relevant first
        """
        query_embedding = self.generate_embeddings([query])[0]

        where_filter = None
        if in_stock_only:
            where_filter = {"stock_status": {"$ne": "out_of_stock"}}

        results = self.collection.query(
            query_embeddings=[query_embedding],
            n_results=n_results,
            where=where_filter,
            include=["metadatas", "distances"]
        )

        matches = []
        if results['ids'] and results['ids'][0]:
            for i, _ in enumerate(results['ids'][0]):
                product = self._product_from_metadata(results['metadatas'][0][i])
                distance = results['distances'][0][i] if results['distances'] else 0
                matches.append((product, round(1 - distance, 3)))
        return matches

    def get_product_count(self) -> int:
        return self.collection.count()

    def clear_collection(self):
        """Remove all products from the collection."""
        self.chroma_client.delete_collection(PRODUCTS_COLLECTION)
        self.collection = self.chroma_client.create_collection(
            name=PRODUCTS_COLLECTION,
            metadata={"hnsw:space": "cosine"}
        )


def initialize_catalog(
    products_path: Optional[str] = None,
    vector_store_path: Optional[str] = None,
    force_reinitialize: bool = False
) -> ChromaProductCatalog:
    """
    Index the products file into the vector store unless it is already populated.

    Args:
        products_path: Path to products JSON file
        vector_store_path: Path for vector store persistence
        force_reinitialize: If True, clear and rebuild the store
    """
    catalog = ChromaProductCatalog(persist_directory=vector_store_path)

    current_count = catalog.get_product_count()
    if current_count > 0 and not force_reinitialize:
        logger.info("Catalog already contains %s products", current_count)
        return catalog

    if force_reinitialize:
        catalog.clear_collection()

    products = load_products_from_file(products_path)
    catalog.index_products(products)
    return catalog

