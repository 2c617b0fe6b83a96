# Import models so that SQLAlchemy metadata includes them on app startup
from .user import User  # noqa: F401
from .address import Address, OrderAddress  # noqa: F401
from .product import Product, ProductVariation  # noqa: F401
from .cart import Cart, CartItem  # noqa: F401
from .promo_code import PromoCode, PromoCodeUsage  # noqa: F401
from .order import Order  # noqa: F401
from .order_item import OrderItem  # noqa: F401
from .wallet import Wallet, WalletTransaction  # noqa: F401
from .setting import Setting  # noqa: F401
