"""CLI command tests through Flask's test_cli_runner."""

from channelops.extensions import db
from channelops.models import ChannelStock
from channelops.services import channel_service, staff_service

from conftest import BARCODE_TEE_M


def test_init_db_is_idempotent(app, db_session):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["system", "init-db"])
    assert result.exit_code == 0
    assert "PASS" in result.output


def test_reset_db_requires_confirmation(app, db_session):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["system", "reset-db"], input="n\n")
    assert result.exit_code != 0
    assert "DELETE ALL DATA" in result.output


def test_channels_list_empty(app, db_session):
    result = app.test_cli_runner().invoke(args=["channels", "list"])
    assert result.exit_code == 0
    assert "No channels found." in result.output


def test_channels_list_and_show(app, activate_channel):
    channel_id = activate_channel({BARCODE_TEE_M: 8}, name="Mega Fair")
    runner = app.test_cli_runner()

    listed = runner.invoke(args=["channels", "list", "--status", "active"])
    assert listed.exit_code == 0
    assert "Mega Fair" in listed.output

    shown = runner.invoke(args=["channels", "show", str(channel_id)])
    assert shown.exit_code == 0
    assert "Status: active" in shown.output
    assert BARCODE_TEE_M in shown.output

    missing = runner.invoke(args=["channels", "show", "9999"])
    assert missing.exit_code == 1
    assert "not found" in missing.output


def test_ledger_audit(app, activate_channel):
    channel_id = activate_channel({BARCODE_TEE_M: 8})
    runner = app.test_cli_runner()

    clean = runner.invoke(args=["ledger", "audit"])
    assert clean.exit_code == 0
    assert "PASS Ledger balanced." in clean.output

    row = db.session.query(ChannelStock).filter_by(channel_id=channel_id, barcode=BARCODE_TEE_M).one()
    row.available_quantity = 5
    db.session.commit()

    broken = runner.invoke(args=["ledger", "audit", "--channel-id", str(channel_id)])
    assert broken.exit_code == 1
    assert "difference=3" in broken.output


def test_staff_list(app, staff):
    runner = app.test_cli_runner()

    active = runner.invoke(args=["staff", "list"])
    assert active.exit_code == 0
    assert "Nok" in active.output
    assert "Former" not in active.output

    everyone = runner.invoke(args=["staff", "list", "--all"])
    assert "Former (inactive)" in everyone.output


def test_channels_compensation(app, activate_channel, staff):
    nok_id = staff[0].id
    staff_service.update_staff(nok_id, daily_rate_cents=50000).unwrap()
    channel_id = activate_channel({BARCODE_TEE_M: 8})
    channel_service.assign_staff(channel_id, [{"staff_id": nok_id, "is_main": True}]).unwrap()
    staff_service.record_attendance(channel_id, nok_id, "2026-11-01").unwrap()
    runner = app.test_cli_runner()

    shown = runner.invoke(args=["channels", "compensation", str(channel_id)])
    assert shown.exit_code == 0
    assert "Nok *" in shown.output
    assert "Staff cost: 500.00" in shown.output

    missing = runner.invoke(args=["channels", "compensation", "9999"])
    assert missing.exit_code == 1
