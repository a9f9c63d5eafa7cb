"""
Pytest fixtures for the order service tests.
"""

import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["USE_REDIS_ORDER_NUMBERS"] = "false"
os.environ["STRICT_ORDER_TOTALS"] = "false"

import pytest
from fastapi.testclient import TestClient

from qrmenu.core.database import Base, SessionLocal, engine
from qrmenu.main import create_app
from qrmenu.models.order import MenuItem, Restaurant
from qrmenu.utils.broadcast import Broadcaster


@pytest.fixture
def db_session():
    """Fresh in-memory schema per test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def broadcaster():
    return Broadcaster()


@pytest.fixture
def app(db_session, broadcaster):
    return create_app(broadcaster)


@pytest.fixture
def client(app):
    """One event loop for HTTP and WebSocket calls, so broadcasts reach open sockets."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def restaurant(db_session):
    """Create a test restaurant."""
    restaurant = Restaurant(name='Spice Route', slug='spice-route')
    db_session.add(restaurant)
    db_session.commit()
    return restaurant


@pytest.fixture
def other_restaurant(db_session):
    restaurant = Restaurant(name='Pasta Palace', slug='pasta-palace')
    db_session.add(restaurant)
    db_session.commit()
    return restaurant


@pytest.fixture
def menu_items(db_session, restaurant):
    """Butter chicken and naan on the test restaurant's menu."""
    items = [
        MenuItem(restaurant_id=restaurant.id, name='Butter Chicken', price=13.5),
        MenuItem(restaurant_id=restaurant.id, name='Garlic Naan', price=2.5),
    ]
    db_session.add_all(items)
    db_session.commit()
    return items


@pytest.fixture
def order_payload(restaurant, menu_items):
    """Factory for a valid checkout body (camelCase, as the customer site sends it)."""
    chicken, naan = menu_items

    def make(**overrides):
        payload = {
            'restaurantId': restaurant.id,
            'tableNumber': '7',
            'customerId': 'customer-1',
            'customerName': 'Ayesha',
            'customerPhone': '+92 300 1234567',
            'deliveryType': 'dine_in',
            'items': [
                {'menuItemId': chicken.id, 'quantity': 2, 'unitPrice': 13.5},
                {'menuItemId': naan.id, 'quantity': 3, 'unitPrice': 2.5, 'specialRequests': 'extra butter'},
            ],
            'totalAmount': 34.5,
            'paymentMethod': 'cash',
        }
        payload.update(overrides)
        return payload

    return make


@pytest.fixture
def create_order(client, order_payload):
    """POST an order through the API and return the response body."""

    def create(**overrides):
        response = client.post('/api/v1/orders', json=order_payload(**overrides))
        assert response.status_code == 201, response.text
        return response.json()

    return create
