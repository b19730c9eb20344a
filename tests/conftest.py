import os
from typing import Optional

os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from storefront.auth_routes import hash_password, issue_token
from storefront.db import engine_kwargs, get_session, init_db
from storefront.main import app
from storefront.models import Product, User

# bcrypt is slow on purpose; hash the shared test password once
PASSWORD = "secret123"
_PASSWORD_HASH = hash_password(PASSWORD)


@pytest.fixture
async def engine(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'storefront-test.db'}"
    eng = create_async_engine(url, **engine_kwargs(url))
    await init_db(bind=eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(session_factory):
    async def _get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = _get_session
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def user_factory(session_factory):
    seq = {"n": 0}

    async def make(role: str = "customer", email: Optional[str] = None, name: str = "Test User") -> User:
        seq["n"] += 1
        async with session_factory() as session:
            user = User(
                email=email or f"{role}{seq['n']}@example.com",
                name=name,
                phone="9876543210",
                password_hash=_PASSWORD_HASH,
                role=role,
                is_active=True,
            )
            session.add(user)
            await session.commit()
            await session.refresh(user)
        return user

    return make


@pytest.fixture
def product_factory(session_factory):
    seq = {"n": 0}

    async def make(price_cents: int = 50_000, stock: int = 10, sizes=("S", "M", "L"), **fields) -> Product:
        seq["n"] += 1
        async with session_factory() as session:
            product = Product(
                name=fields.pop("name", f"Linen Shirt {seq['n']}"),
                sku=fields.pop("sku", f"SKU-{seq['n']:04d}"),
                price_cents=price_cents,
                stock=stock,
                sizes=list(sizes),
                category=fields.pop("category", "Shirts"),
                gender=fields.pop("gender", "men"),
                images=[],
                **fields,
            )
            session.add(product)
            await session.commit()
            await session.refresh(product)
        return product

    return make


def headers_for(user: User) -> dict:
    return {"Authorization": f"Bearer {issue_token(user)}"}


@pytest.fixture
def auth():
    return headers_for


@pytest.fixture
async def customer(user_factory):
    return await user_factory()


@pytest.fixture
async def admin(user_factory):
    return await user_factory(role="admin", name="Admin")


CHECKOUT_CONTACT = {
    "customer_name": "Asha Rao",
    "phone": "9876543210",
    "house_flat": "12B",
    "street": "MG Road",
    "city": "Bengaluru",
    "state": "KA",
    "pincode": "560001",
}


@pytest.fixture
def place_order(client, auth):
    async def place(user: User, items, payment_method: str = "UPI", headers: dict = None):
        body = {**CHECKOUT_CONTACT, "payment_method": payment_method}
        if items is not None:
            body["items"] = items
        return await client.post("/api/orders", json=body, headers={**auth(user), **(headers or {})})

    return place


@pytest.fixture
def advance(client, auth, admin):
    """Move an order through admin status updates."""

    async def move(order_id: str, *statuses: str):
        resp = None
        for status in statuses:
            resp = await client.patch(f"/api/orders/{order_id}/status", json={"status": status}, headers=auth(admin))
            assert resp.status_code == 200, resp.text
        return resp.json()

    return move
