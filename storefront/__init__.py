"""
Storefront backend: catalog, cart, orders, inventory reservation and
Stripe payment reconciliation behind a FastAPI JSON API.
"""

__version__ = "1.0.0"
