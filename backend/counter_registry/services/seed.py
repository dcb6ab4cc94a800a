from datetime import date

from sqlalchemy.orm import Session

from counter_registry.core.config import settings
from counter_registry.models.addon import Addon
from counter_registry.models.channel import Channel, ChannelProductPrice
from counter_registry.models.product import Product, ProductAddon
from counter_registry.models.user import User

DEMO_CHANNELS = [
    # name, payment method, cash eligible
    ("Fareharbor", "Online", False),
    ("Viator", "Online", False),
    ("GetYourGuide", "Online", False),
    ("Walk-In", "Cash", True),
    ("Ecwid", "Online", False),
    ("TopDeck", "Cash", True),
]

DEMO_ADDONS = [
    # name, max per attendee
    ("Cocktails", None),
    ("T-Shirts", 1),
    ("Photos", 2),
]

DEMO_USERS = [
    ("Maria", "Manager", "manager@demo.com", "manager", "Manager"),
    ("Adam", "Assistant", "assistant@demo.com", "assistant-manager", "Assistant Manager"),
    ("Gosia", "Guide", "guide@demo.com", "pub-crawl-guide", "Pub Crawl Guide"),
    ("Tomek", "Guide", "guide2@demo.com", "guide", "Guide"),
]


def seed_demo(db: Session) -> None:
    if db.query(Product).filter(Product.name == settings.default_product_name).first():
        return

    product = Product(name=settings.default_product_name, price=60)
    db.add(product)
    db.flush()

    for index, (name, max_per_attendee) in enumerate(DEMO_ADDONS):
        addon = Addon(name=name)
        db.add(addon)
        db.flush()
        db.add(ProductAddon(
            product_id=product.id,
            addon_id=addon.id,
            max_per_attendee=max_per_attendee,
            sort_order=index,
        ))

    for name, payment_method, cash_eligible in DEMO_CHANNELS:
        channel = Channel(name=name, payment_method_name=payment_method, cash_payment_eligible=cash_eligible)
        db.add(channel)
        db.flush()
        if cash_eligible:
            db.add(ChannelProductPrice(
                channel_id=channel.id,
                product_id=product.id,
                price=50,
                valid_from=date(2020, 1, 1),
            ))

    for first_name, last_name, email, slug, role_name in DEMO_USERS:
        if db.query(User).filter(User.email == email).first():
            continue
        db.add(User(first_name=first_name, last_name=last_name, email=email, role_slug=slug, role_name=role_name))

    db.commit()
