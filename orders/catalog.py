from django.conf import settings
from django.utils.module_loading import import_string


class ProductCatalog:
    """Read-only product lookup owned by the catalog service.

    ``get_product`` returns at least ``{"id", "name", "price"}`` or ``None``
    when the product does not exist.
    """

    def get_product(self, product_id: str) -> dict | None:
        raise NotImplementedError


class DictCatalog(ProductCatalog):
    def __init__(self, products: dict):
        self.products = products

    def get_product(self, product_id):
        return self.products.get(product_id)


def get_product_catalog() -> ProductCatalog | None:
    path = getattr(settings, "ORDERS_PRODUCT_CATALOG", "")
    if not path:
        return None
    return import_string(path)()
