from .base import Base
from .user import User
from .addon import Addon
from .product import Product, ProductAddon
from .channel import Channel, ChannelProductPrice
from .counter import Counter, CounterUser, CounterChannelMetric

__all__ = [
    "Base",
    "User",
    "Addon",
    "Product",
    "ProductAddon",
    "Channel",
    "ChannelProductPrice",
    "Counter",
    "CounterUser",
    "CounterChannelMetric",
]
