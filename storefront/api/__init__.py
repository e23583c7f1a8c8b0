"""HTTP routers, one per resource."""

from storefront.api import analytics, cart, orders, payments, products, users

ROUTERS = [
    products.router,
    cart.router,
    orders.router,
    payments.router,
    analytics.router,
    users.router,
]
