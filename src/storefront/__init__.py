"""storefront - checkout and order-lifecycle core for the storefront."""

__version__ = "0.1.0"
