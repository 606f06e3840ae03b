import os

os.environ.setdefault("JWT_SECRET", "test-secret-key-for-storefront-cart-tests")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from datetime import timedelta
from decimal import Decimal

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from storefront import app as fastapi_app
from storefront.core.dependencies import get_db, get_variant_lookup
from storefront.db.base import Base
from storefront.db.database import enable_sqlite_savepoints
from storefront.models import Coupon, CouponUsage
from storefront.models.base import utcnow
from storefront.schemas.variant import VariantInfo
from storefront.services import AuthService, CartService
from storefront.services.variant_lookup import VariantPriceLookup


class FakeVariantLookup(VariantPriceLookup):
    """In-memory catalog keyed by (product_id, variant_id)."""

    def __init__(self):
        self.variants = {}
        self.calls = 0

    def add(self, product_id, variant_id, price, sale_price=None, tax_rate="5", min_quantity=1, max_quantity=None):
        variant = VariantInfo(
            product_id=product_id,
            variant_id=variant_id,
            price=Decimal(str(price)),
            sale_price=Decimal(str(sale_price)) if sale_price is not None else None,
            tax_rate=Decimal(str(tax_rate)) if tax_rate is not None else None,
            min_quantity=min_quantity,
            max_quantity=max_quantity,
        )
        self.variants[(product_id, variant_id)] = variant
        return variant

    def remove(self, product_id, variant_id):
        self.variants.pop((product_id, variant_id), None)

    async def get_variant(self, product_id, variant_id):
        self.calls += 1
        return self.variants.get((product_id, variant_id))


@pytest.fixture
async def engine():
    """In-memory SQLite DB shared by every session of a test."""
    _engine = enable_sqlite_savepoints(
        create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    )
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield _engine
    await _engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def variants():
    return FakeVariantLookup()


@pytest.fixture
def cart_service(db_session, variants):
    return CartService(db_session, variants)


@pytest.fixture
def make_coupon(db_session):
    async def _make_coupon(code="SAVE50", discount_type="fixed_amount", discount_value="50", **kwargs):
        kwargs.setdefault("start_date", utcnow() - timedelta(days=1))
        coupon = Coupon(
            code=code,
            name=kwargs.pop("name", code),
            discount_type=discount_type,
            discount_value=Decimal(str(discount_value)),
            **kwargs,
        )
        db_session.add(coupon)
        await db_session.commit()
        return coupon

    return _make_coupon


@pytest.fixture
def record_usage(db_session):
    async def _record_usage(coupon, user_id, order_id="ORD-1"):
        db_session.add(CouponUsage(coupon_id=coupon.id, user_id=user_id, order_id=order_id, discount_amount=Decimal("0")))
        await db_session.commit()

    return _record_usage


@pytest.fixture
def auth_headers():
    def _auth_headers(user_id=1):
        token = AuthService().create_access_token(user_id)
        return {"Authorization": f"Bearer {token}"}

    return _auth_headers


@pytest.fixture
async def client(session_factory, variants):
    """HTTP client against the app with the test database and catalog wired in."""

    async def override_get_db():
        async with session_factory() as s:
            yield s

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_variant_lookup] = lambda: variants

    transport = httpx.ASGITransport(app=fastapi_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c

    fastapi_app.dependency_overrides.clear()
