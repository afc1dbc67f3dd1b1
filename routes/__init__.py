from .swap_order_routes import router as swap_order_routes
from .payment_routes import router as payment_routes

__all__ = [
    'swap_order_routes',
    'payment_routes'
]
