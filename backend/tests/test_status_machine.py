"""
Tests for the lifecycle tables and guarded transitions.

The table lookup (can_transition) must agree exactly with what transition
accepts; guards can only narrow it further.
"""

import pytest
from channelops.errors import ErrorKind
from channelops.extensions import db
from channelops.models import Channel, StockRequest
from channelops.services import channel_service, status_machine, stock_request_service
from channelops.services.status_machine import (
    CHANNEL_TRANSITIONS,
    ChannelStatus,
    PaymentStatus,
    StockRequestStatus,
    available_actions,
    can_transition,
    transition,
    transition_channel,
)

from conftest import BARCODE_TEE_M


def _bare_channel(status, *, channel_type="BRANCH", payment_status="none", code="BR-900"):
    channel = Channel(
        code=code,
        type=channel_type,
        name="Corner Kiosk",
        status=status,
        payment_status=payment_status,
    )
    db.session.add(channel)
    db.session.commit()
    return channel


class TestCanTransition:
    def test_every_table_entry_is_reported(self, db_session):
        channel = _bare_channel("draft")
        for current, successors in CHANNEL_TRANSITIONS.items():
            channel.status = current.value
            for target in ChannelStatus:
                assert can_transition(channel, target.value) == (target in successors)

    def test_unknown_target_is_not_a_transition(self, db_session):
        channel = _bare_channel("draft")
        assert can_transition(channel, "teleported") is False

    def test_payment_targets_use_payment_table(self, db_session):
        channel = _bare_channel("active")
        assert can_transition(channel, "pending_payment") is True
        assert can_transition(channel, "payment_approved") is False

        channel.payment_status = "pending_payment"
        assert can_transition(channel, PaymentStatus.PAYMENT_APPROVED) is True
        assert can_transition(channel, "none") is True

    def test_stock_request_table(self, draft_channel):
        request = draft_channel.stock_requests[0]
        assert can_transition(request, "submitted") is True
        assert can_transition(request, "packed") is False
        assert can_transition(request, StockRequestStatus.CANCELLED) is True

    def test_available_actions_lists_both_tracks(self, db_session):
        channel = _bare_channel("active")
        assert available_actions(channel) == ["completed", "pending_payment", "pending_return"]

    def test_terminal_states_have_no_successors(self, db_session):
        for terminal in ("completed", "cancelled"):
            channel = _bare_channel(terminal, code=f"BR-{terminal}")
            assert available_actions(channel) == ["pending_payment"]
            assert not any(can_transition(channel, s.value) for s in ChannelStatus)


class TestTransitionAgreesWithTable:
    @pytest.mark.parametrize("current,target", [
        ("draft", "approved"),
        ("draft", "active"),
        ("approved", "shipped"),
        ("shipped", "cancelled"),
        ("active", "draft"),
        ("completed", "active"),
        ("cancelled", "draft"),
    ])
    def test_rejected_when_not_in_table(self, db_session, current, target):
        channel = _bare_channel(current)
        assert can_transition(channel, target) is False

        result = transition_channel(channel.id, target)
        assert not result.is_success
        assert result.kind == ErrorKind.INVALID_TRANSITION
        assert db.session.get(Channel, channel.id).status == current

    def test_unknown_status_is_invalid_input(self, db_session):
        channel = _bare_channel("draft")
        result = transition_channel(channel.id, "teleported")
        assert result.kind == ErrorKind.INVALID_INPUT

    def test_missing_channel(self, db_session):
        result = transition_channel(424242, "approved")
        assert result.kind == ErrorKind.NOT_FOUND

    def test_success_writes_event_log(self, db_session):
        channel = _bare_channel("draft")
        result = transition(channel, "pending_approval", actor="planner")
        assert result.is_success
        assert result.value.status == "pending_approval"

        from channelops.services.event_log_service import list_event_log
        entries = list_event_log(channel.id)
        assert [e.action for e in entries] == ["status_changed"]
        assert entries[0].details == {"from": "draft", "to": "pending_approval"}
        assert entries[0].changed_by == "planner"

    def test_stock_request_dispatch(self, draft_channel):
        request = draft_channel.stock_requests[0]
        result = transition(request, "submitted", actor="planner")
        assert result.is_success
        assert db.session.get(StockRequest, request.id).status == "submitted"


class TestGuards:
    def test_packing_requires_allocation(self, draft_channel):
        channel_id = draft_channel.id
        draft_channel.status = "approved"
        db.session.commit()

        result = transition_channel(channel_id, "packing")
        assert result.kind == ErrorKind.GUARD_FAILED
        assert db.session.get(Channel, channel_id).status == "approved"

    def test_partial_packing_needs_explicit_confirmation(self, draft_channel):
        channel_id = draft_channel.id
        request = draft_channel.stock_requests[0]
        request.status = "allocated"
        request.items[0].packed_quantity = 6
        draft_channel.status = "approved"
        db.session.commit()

        refused = transition_channel(channel_id, "packing")
        assert refused.kind == ErrorKind.GUARD_FAILED
        assert refused.error.details["packed_total_quantity"] == 6

        accepted = transition_channel(channel_id, "packing", allow_partial=True)
        assert accepted.is_success
        assert accepted.value.status == "packing"

    def test_only_events_go_pending_return(self, db_session):
        channel = _bare_channel("active", channel_type="BRANCH")
        result = transition_channel(channel.id, "pending_return")
        assert result.kind == ErrorKind.GUARD_FAILED

    def test_event_cannot_complete_from_active(self, db_session):
        channel = _bare_channel("active", channel_type="EVENT", payment_status="payment_approved")
        result = transition_channel(channel.id, "completed")
        assert result.kind == ErrorKind.GUARD_FAILED

    def test_completion_requires_payment_approval(self, db_session):
        channel = _bare_channel("active", channel_type="BRANCH")
        assert transition_channel(channel.id, "completed").kind == ErrorKind.GUARD_FAILED

        db.session.get(Channel, channel.id).payment_status = "payment_approved"
        db.session.commit()
        done = transition_channel(channel.id, "completed")
        assert done.is_success
        assert done.value.completed_at is not None

    def test_payment_needs_selling_channel(self, db_session):
        channel = _bare_channel("approved")
        result = transition_channel(channel.id, "pending_payment")
        assert result.kind == ErrorKind.GUARD_FAILED
        assert db.session.get(Channel, channel.id).payment_status == "none"

    def test_payment_track_is_independent_of_goods_track(self, db_session):
        channel = _bare_channel("active")
        result = transition_channel(channel.id, "pending_payment", actor="finance")
        assert result.is_success
        refreshed = db.session.get(Channel, channel.id)
        assert refreshed.status == "active"
        assert refreshed.payment_status == "pending_payment"

    def test_request_packed_needs_allocation(self, draft_channel):
        request = draft_channel.stock_requests[0]
        request.status = "allocated"
        db.session.commit()

        result = status_machine.transition_stock_request(request.id, "packed")
        assert result.kind == ErrorKind.GUARD_FAILED


class TestWorkflowOwnedTransitions:
    """Targets with ledger effects are only reachable through their operations."""

    def test_pending_return_needs_close_out(self, activate_channel):
        channel_id = activate_channel({BARCODE_TEE_M: 4})
        result = transition_channel(channel_id, "pending_return")
        assert result.kind == ErrorKind.GUARD_FAILED
        assert result.error.details["operation"] == "close_channel_stock"
        assert db.session.get(Channel, channel_id).status == "active"

    def test_returning_needs_return_shipment(self, activate_channel):
        channel_id = activate_channel({BARCODE_TEE_M: 4})
        channel_service.close_channel_stock(channel_id).unwrap()

        result = transition_channel(channel_id, "returning")
        assert result.kind == ErrorKind.GUARD_FAILED
        assert result.error.details["operation"] == "create_return_shipment"
        assert db.session.get(Channel, channel_id).status == "pending_return"

    def test_returned_needs_settled_return(self, activate_channel):
        channel_id = activate_channel({BARCODE_TEE_M: 4})
        channel_service.close_channel_stock(channel_id).unwrap()
        channel_service.create_return_shipment(channel_id, "Kerry Express").unwrap()

        result = transition_channel(channel_id, "returned")
        assert result.kind == ErrorKind.GUARD_FAILED
        assert result.error.details["operation"] == "confirm_return_received"
        assert db.session.get(Channel, channel_id).status == "returning"

        channel_service.confirm_return_received(channel_id).unwrap()
        assert db.session.get(Channel, channel_id).status == "returned"

    def test_request_shipping_steps_are_refused(self, draft_channel):
        channel_id = draft_channel.id
        channel_service.submit_channel(channel_id).unwrap()
        channel_service.approve_channel(channel_id).unwrap()
        request_id = stock_request_service.list_requests(channel_id)[0].id
        stock_request_service.upload_allocation(request_id, [{"barcode": BARCODE_TEE_M, "packed_quantity": 10}]).unwrap()

        unreleased = status_machine.transition_stock_request(request_id, "approved")
        assert unreleased.kind == ErrorKind.GUARD_FAILED
        assert unreleased.error.details["operation"] == "release_allocation"
        assert db.session.get(StockRequest, request_id).status == "allocated"

        stock_request_service.confirm_packing(request_id).unwrap()
        unshipped = status_machine.transition_stock_request(request_id, "shipped")
        assert unshipped.kind == ErrorKind.GUARD_FAILED
        assert unshipped.error.details["operation"] == "create_shipment"
        assert db.session.get(StockRequest, request_id).status == "packed"

        stock_request_service.create_shipment(request_id, "Kerry Express").unwrap()
        unreceived = status_machine.transition_stock_request(request_id, "received")
        assert unreceived.kind == ErrorKind.GUARD_FAILED
        assert unreceived.error.details["operation"] == "confirm_receiving"
        assert db.session.get(StockRequest, request_id).status == "shipped"
        assert db.session.get(Channel, channel_id).status == "shipped"
