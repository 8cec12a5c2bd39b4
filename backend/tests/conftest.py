"""
Pytest fixtures for channel-ops backend tests.

Provides the application on an in-memory database, a per-test table wipe,
catalog/staff seed data and a factory that drives a channel to active.
"""

import pytest
from channelops import create_app
from channelops.extensions import db
from channelops.models import Product, Staff
from channelops.services import channel_service, stock_request_service


BARCODE_TEE_M = "8850001000011"
BARCODE_TEE_L = "8850001000028"
BARCODE_CAP = "8850001000035"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'TRANSACTION_RETRY_BACKOFF': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    # Clear all data but keep schema
    meta = db.metadata
    for table in reversed(meta.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    yield db.session

    # Cleanup after test
    db.session.rollback()
    db.session.remove()


@pytest.fixture(scope='function')
def products(db_session):
    """Three catalog products; two share a code and differ by size."""
    rows = [
        Product(barcode=BARCODE_TEE_M, code="TS-100", name="Logo Tee", size="M", color="BLK", price_cents=29900),
        Product(barcode=BARCODE_TEE_L, code="TS-100", name="Logo Tee", size="L", color="BLK", price_cents=29900),
        Product(barcode=BARCODE_CAP, code="CAP-7", name="Field Cap", size="F", color="RED", price_cents=19900),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return {p.barcode: p for p in rows}


@pytest.fixture(scope='function')
def staff(db_session):
    """Two active staff members and one inactive."""
    rows = [
        Staff(code="PC01", name="Nok", role="PC", is_active=True),
        Staff(code="PC02", name="Beam", role="PC", is_active=True),
        Staff(code="PC03", name="Former", role="PC", is_active=False),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return rows


@pytest.fixture(scope='function')
def draft_channel(db_session, products):
    """EVENT channel in draft with an INITIAL request for 10 medium tees."""
    result = channel_service.create_channel(
        name="Central World Pop-up",
        channel_type="EVENT",
        location="Central World, Hall B",
        start_date="2026-11-01",
        end_date="2026-11-07",
        initial_request={"items": [{"barcode": BARCODE_TEE_M, "quantity": 10}]},
        actor="planner",
    )
    return result.unwrap()


@pytest.fixture(scope='function')
def activate_channel(db_session, products):
    """
    Factory: create a channel and walk it through approval, allocation,
    packing, shipment and receiving. Returns the channel id.
    """
    def _activate(quantities, *, channel_type="EVENT", name="Siam Paragon Event"):
        items = [{"barcode": barcode, "quantity": qty} for barcode, qty in quantities.items()]
        channel = channel_service.create_channel(
            name=name,
            channel_type=channel_type,
            initial_request={"items": items},
            submit=True,
            actor="planner",
        ).unwrap()
        channel_id = channel.id

        channel_service.approve_channel(channel_id, actor="manager").unwrap()
        request_id = stock_request_service.list_requests(channel_id)[0].id

        rows = [{"barcode": barcode, "packed_quantity": qty} for barcode, qty in quantities.items()]
        stock_request_service.upload_allocation(request_id, rows, actor="warehouse").unwrap()
        stock_request_service.confirm_packing(request_id, actor="warehouse").unwrap()
        stock_request_service.create_shipment(request_id, "Kerry Express", tracking_number="KE123", actor="warehouse").unwrap()
        stock_request_service.confirm_receiving(request_id, actor="pc").unwrap()
        return channel_id

    return _activate
