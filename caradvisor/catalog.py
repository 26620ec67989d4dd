import json
import logging
from typing import Dict, Mapping, Optional

from caradvisor.exceptions import UnknownProductError

logger = logging.getLogger(__name__)

# Store product id -> credits granted
PRODUCT_CREDITS: Dict[str, int] = {
    "credits_5": 5,
    "credits_15": 15,
    "credits_40": 40,
}


def parse_catalog(raw: str) -> Dict[str, int]:
    """Parse a ``{"product_id": credits}`` JSON object (the PRODUCT_CATALOG env var)."""
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("PRODUCT_CATALOG must be a JSON object")
    catalog = {}
    for product_id, amount in data.items():
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError(f"PRODUCT_CATALOG[{product_id!r}] must be a positive integer")
        catalog[str(product_id)] = amount
    return catalog


def load_catalog(raw: Optional[str]) -> Dict[str, int]:
    if not raw or not raw.strip():
        return dict(PRODUCT_CREDITS)
    try:
        return parse_catalog(raw)
    except ValueError:
        logger.exception("[CATALOG] invalid PRODUCT_CATALOG, using built-in products")
        return dict(PRODUCT_CREDITS)


def credits_for_product(product_id: str, catalog: Mapping[str, int]) -> int:
    amount = catalog.get(product_id)
    if amount is None:
        raise UnknownProductError(field="productId")
    return amount
