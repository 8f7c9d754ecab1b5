import os
import tempfile

# settings are read at import time, so pin them before storefront is imported
_tmp = tempfile.mkdtemp(prefix="storefront-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_tmp}/storefront.db"
os.environ["UPLOAD_DIR"] = os.path.join(_tmp, "uploads")
os.environ["TAX_RATE"] = "0.18"
os.environ["SHIPPING_FEE"] = "50.00"
os.environ["FREE_SHIPPING_THRESHOLD"] = "500.00"
os.environ["DISCORD_WEBHOOK_URL"] = ""
os.environ["ADMIN_DISCORD_IDS"] = "discord-admin"

from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from storefront import models  # noqa: E402
from storefront.database import Base, build_engine  # noqa: E402
from storefront.notifications import Notifier  # noqa: E402


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events = []

    def notify(self, kind, payload):
        self.events.append((kind, dict(payload)))

    def kinds(self):
        return [kind for kind, _ in self.events]

    def payloads(self, kind):
        return [payload for k, payload in self.events if k == kind]


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def factory(username=None, is_admin=False, is_banned=False):
        counter["n"] += 1
        user = models.User(
            discord_id=f"discord-{counter['n']}",
            username=username or f"user{counter['n']}",
            is_admin=is_admin,
            is_banned=is_banned,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return factory


@pytest.fixture
def make_product(db):
    def factory(name="Training Tee", price="100.00", stock=5, category="T-Shirts", brand="Puma"):
        product = models.Product(
            name=name,
            description=f"{name} description",
            price=Decimal(price),
            category=category,
            brand=brand,
            stock=stock,
        )
        db.add(product)
        db.commit()
        db.refresh(product)
        return product

    return factory


@pytest.fixture
def make_coupon(db):
    def factory(code="SAVE20", discount_type="percentage", value="20", **kwargs):
        coupon = models.Coupon(
            code=code,
            discount_type=discount_type,
            discount_value=Decimal(value),
            **kwargs,
        )
        db.add(coupon)
        db.commit()
        db.refresh(coupon)
        return coupon

    return factory


@pytest.fixture
def stock_of(db):
    def read(product_id):
        db.expire_all()
        return db.get(models.Product, product_id).stock

    return read
