"""
Sale processor tests: totals, bill numbering, atomic multi-line sales and
cancellation as the exact inverse of the sale's ledger effect.
"""

import pytest
from channelops.errors import ErrorKind
from channelops.extensions import db
from channelops.models import Channel, ChannelStock, EventLog, Sale
from channelops.services import sale_service, stock_ledger
from channelops.services.sale_service import Adjustment, CartLine, compute_totals

from conftest import BARCODE_CAP, BARCODE_TEE_L, BARCODE_TEE_M


def _available(channel_id, barcode):
    return (
        db.session.query(ChannelStock.available_quantity)
        .filter_by(channel_id=channel_id, barcode=barcode)
        .scalar()
    )


@pytest.fixture
def shop(db_session):
    """Active branch channel holding 10 medium tees and 4 caps."""
    channel = Channel(code="BR-007", type="BRANCH", name="Terminal 21", status="active", payment_status="none")
    db.session.add(channel)
    db.session.commit()
    channel_id = channel.id
    stock_ledger.receive(channel_id, BARCODE_TEE_M, 10).unwrap()
    stock_ledger.receive(channel_id, BARCODE_CAP, 4).unwrap()
    return channel_id


class TestTotals:
    def test_line_discounts_adjustments_and_bill_discount(self):
        lines = [
            CartLine(barcode="A", quantity=2, unit_price_cents=29900, discount_cents=4900),
            CartLine(barcode="B", quantity=1, unit_price_cents=19900),
            CartLine(barcode="C", quantity=3, unit_price_cents=9900, is_freebie=True),
        ]
        adjustments = [Adjustment("Bag fee", 200), Adjustment("Voucher", -5000)]

        totals = compute_totals(lines, adjustments, discount_cents=1000)
        assert totals.subtotal_cents == 2 * 25000 + 19900
        assert totals.adjustment_total_cents == -4800
        assert totals.total_amount_cents == 69900 - 4800 - 1000

    def test_freebie_contributes_nothing(self):
        line = CartLine(barcode="C", quantity=3, unit_price_cents=9900, discount_cents=100, is_freebie=True)
        assert line.net_unit_cents == 0
        assert line.total_cents == 0


class TestCreateSale:
    def test_records_bill_and_decrements_stock(self, shop):
        result = sale_service.create_sale(
            channel_id=shop,
            items=[
                {"barcode": BARCODE_TEE_M, "quantity": 2, "unit_price_cents": 29900, "discount_cents": 2900},
                {"barcode": BARCODE_CAP, "quantity": 1, "unit_price_cents": 19900},
            ],
            adjustments=[{"description": "Bag", "amount_cents": 100}],
            actor="pc",
        )
        assert result.is_success
        sale = result.value
        assert sale.bill_code == "BR-007-0001"
        assert sale.subtotal_cents == 54000 + 19900
        assert sale.total_amount_cents == 74000
        assert [i.unit_price_cents for i in sale.items] == [27000, 19900]
        assert [a.amount_cents for a in sale.adjustments] == [100]

        assert _available(shop, BARCODE_TEE_M) == 8
        assert _available(shop, BARCODE_CAP) == 3
        assert db.session.query(EventLog).filter_by(action="sale_recorded").count() == 1

    def test_bill_numbers_are_gapless(self, shop):
        codes = [
            sale_service.create_sale(
                channel_id=shop,
                items=[CartLine(BARCODE_TEE_M, 1, 29900)],
            ).unwrap().bill_code
            for _ in range(5)
        ]
        assert codes == [f"BR-007-{n:04d}" for n in range(1, 6)]

    def test_one_short_line_aborts_the_whole_sale(self, shop):
        result = sale_service.create_sale(
            channel_id=shop,
            items=[
                CartLine(BARCODE_TEE_M, 3, 29900),
                CartLine(BARCODE_CAP, 5, 19900),
            ],
        )
        assert result.kind == ErrorKind.INSUFFICIENT_STOCK
        assert result.error.details["barcode"] == BARCODE_CAP

        assert _available(shop, BARCODE_TEE_M) == 10
        assert _available(shop, BARCODE_CAP) == 4
        assert db.session.query(Sale).count() == 0

        # The aborted sale did not burn a bill number
        assert sale_service.create_sale(channel_id=shop, items=[CartLine(BARCODE_CAP, 1, 19900)]).unwrap().bill_code == "BR-007-0001"

    def test_barcode_never_received(self, shop):
        result = sale_service.create_sale(channel_id=shop, items=[CartLine(BARCODE_TEE_L, 1, 29900)])
        assert result.kind == ErrorKind.INSUFFICIENT_STOCK

    def test_freebies_do_not_touch_stock(self, shop):
        sale = sale_service.create_sale(
            channel_id=shop,
            items=[
                CartLine(BARCODE_TEE_M, 1, 29900),
                CartLine(BARCODE_CAP, 2, 19900, is_freebie=True),
            ],
        ).unwrap()
        assert sale.total_amount_cents == 29900
        assert _available(shop, BARCODE_CAP) == 4

    @pytest.mark.parametrize("items", [
        [],
        [{"barcode": BARCODE_TEE_M, "quantity": 0, "unit_price_cents": 100}],
        [{"barcode": "", "quantity": 1, "unit_price_cents": 100}],
        [{"barcode": BARCODE_TEE_M, "quantity": 1, "unit_price_cents": 100, "discount_cents": 200}],
        [{"barcode": BARCODE_TEE_M, "quantity": 1}],
    ])
    def test_rejects_malformed_cart(self, shop, items):
        result = sale_service.create_sale(channel_id=shop, items=items)
        assert result.kind == ErrorKind.INVALID_INPUT
        assert _available(shop, BARCODE_TEE_M) == 10

    def test_rejects_negative_total(self, shop):
        result = sale_service.create_sale(
            channel_id=shop,
            items=[CartLine(BARCODE_CAP, 1, 19900)],
            discount_cents=20000,
        )
        assert result.kind == ErrorKind.INVALID_INPUT
        assert _available(shop, BARCODE_CAP) == 4

    def test_channel_must_be_active(self, shop):
        db.session.get(Channel, shop).status = "pending_return"
        db.session.commit()
        result = sale_service.create_sale(channel_id=shop, items=[CartLine(BARCODE_CAP, 1, 19900)])
        assert result.kind == ErrorKind.GUARD_FAILED

    def test_unknown_channel(self, db_session):
        result = sale_service.create_sale(channel_id=999, items=[CartLine(BARCODE_CAP, 1, 19900)])
        assert result.kind == ErrorKind.NOT_FOUND

    def test_unbound_sale_has_no_bill_code(self, db_session):
        sale = sale_service.create_sale(items=[CartLine(BARCODE_CAP, 1, 19900)]).unwrap()
        assert sale.channel_id is None
        assert sale.bill_code is None
        assert db.session.query(EventLog).count() == 0


class TestCancelSale:
    def test_cancel_is_exact_inverse(self, shop):
        before = {
            BARCODE_TEE_M: _available(shop, BARCODE_TEE_M),
            BARCODE_CAP: _available(shop, BARCODE_CAP),
        }
        sale = sale_service.create_sale(
            channel_id=shop,
            items=[CartLine(BARCODE_TEE_M, 3, 29900), CartLine(BARCODE_CAP, 1, 19900, is_freebie=True)],
        ).unwrap()
        sale_id = sale.id

        cancelled = sale_service.cancel_sale(sale_id, "Customer changed mind", actor="pc").unwrap()
        assert cancelled.status == "cancelled"
        assert cancelled.cancel_reason == "Customer changed mind"
        assert cancelled.bill_code == "BR-007-0001"

        after = {
            BARCODE_TEE_M: _available(shop, BARCODE_TEE_M),
            BARCODE_CAP: _available(shop, BARCODE_CAP),
        }
        assert after == before
        assert stock_ledger.audit_conservation(shop) == []

    def test_second_cancel_is_already_cancelled(self, shop):
        sale_id = sale_service.create_sale(channel_id=shop, items=[CartLine(BARCODE_TEE_M, 2, 29900)]).unwrap().id
        sale_service.cancel_sale(sale_id, "Wrong size").unwrap()

        again = sale_service.cancel_sale(sale_id, "Wrong size")
        assert again.kind == ErrorKind.ALREADY_CANCELLED
        assert _available(shop, BARCODE_TEE_M) == 10

    def test_reason_is_required(self, shop):
        sale_id = sale_service.create_sale(channel_id=shop, items=[CartLine(BARCODE_TEE_M, 2, 29900)]).unwrap().id
        result = sale_service.cancel_sale(sale_id, "  ")
        assert result.kind == ErrorKind.INVALID_INPUT
        assert _available(shop, BARCODE_TEE_M) == 8

    def test_missing_sale(self, db_session):
        assert sale_service.cancel_sale(31337, "nope").kind == ErrorKind.NOT_FOUND

    def test_cancelled_bill_keeps_its_number(self, shop):
        first = sale_service.create_sale(channel_id=shop, items=[CartLine(BARCODE_TEE_M, 1, 29900)]).unwrap().id
        sale_service.cancel_sale(first, "Void").unwrap()
        second = sale_service.create_sale(channel_id=shop, items=[CartLine(BARCODE_TEE_M, 1, 29900)]).unwrap()
        assert second.bill_code == "BR-007-0002"

    def test_sale_whose_channel_is_gone(self, shop):
        sale_id = sale_service.create_sale(channel_id=shop, items=[CartLine(BARCODE_TEE_M, 1, 29900)]).unwrap().id
        db.session.get(Sale, sale_id).channel_id = 9999
        db.session.commit()

        result = sale_service.cancel_sale(sale_id, "Void")
        assert result.kind == ErrorKind.NOT_FOUND
        assert db.session.get(Sale, sale_id).status == "active"

    def test_cancel_refused_once_channel_closed(self, shop):
        sale_id = sale_service.create_sale(channel_id=shop, items=[CartLine(BARCODE_TEE_M, 1, 29900)]).unwrap().id
        db.session.get(Channel, shop).status = "completed"
        db.session.commit()

        assert sale_service.cancel_sale(sale_id, "Void").kind == ErrorKind.GUARD_FAILED
        assert _available(shop, BARCODE_TEE_M) == 9


class TestQueries:
    def test_list_and_summary_skip_cancelled(self, shop):
        keep = sale_service.create_sale(channel_id=shop, items=[CartLine(BARCODE_TEE_M, 2, 29900)]).unwrap().id
        void = sale_service.create_sale(channel_id=shop, items=[CartLine(BARCODE_CAP, 1, 19900)]).unwrap().id
        sale_service.cancel_sale(void, "Test bill").unwrap()

        assert [s.id for s in sale_service.list_sales(shop)] == [keep]
        assert {s.id for s in sale_service.list_sales(shop, include_cancelled=True)} == {keep, void}

        summary = sale_service.channel_sales_summary(shop)
        assert summary["bill_count"] == 1
        assert summary["revenue_cents"] == 59800
        assert summary["units_sold"] == 2
        assert summary["cancelled_count"] == 1
        assert sale_service.get_sale(keep).to_dict()["bill_code"] == "BR-007-0001"
