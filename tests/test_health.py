from unittest.mock import MagicMock, patch

import ntplib
from sqlalchemy.exc import OperationalError

from college_election import db
from college_election.operations import health_monitor
from college_election.operations.time_sync import check_time_sync


def _ntp_response(offset):
    response = MagicMock()
    response.offset = offset
    response.tx_time = 1900000000.0
    return response


def test_time_sync_within_tolerance():
    with patch("college_election.operations.time_sync.ntplib.NTPClient") as client_cls:
        client_cls.return_value.request.side_effect = [_ntp_response(0.1), _ntp_response(-0.05)]
        result = check_time_sync(servers=["a.ntp", "b.ntp"])

    assert result['overall_ok'] is True
    assert result['average_offset_s'] == 0.025
    assert [r['status'] for r in result['results']] == ["ok", "ok"]


def test_time_sync_drift_and_failures():
    with patch("college_election.operations.time_sync.ntplib.NTPClient") as client_cls:
        client_cls.return_value.request.side_effect = [_ntp_response(2.0), ntplib.NTPException("timeout")]
        result = check_time_sync(servers=["a.ntp", "b.ntp"], max_offset=0.5)

    assert result['overall_ok'] is False
    assert result['results'][0]['status'] == "drifted"
    assert result['results'][1] == {"server": "b.ntp", "error": "timeout", "status": "failed"}


def test_time_sync_all_servers_down():
    with patch("college_election.operations.time_sync.ntplib.NTPClient") as client_cls:
        client_cls.return_value.request.side_effect = OSError("unreachable")
        result = check_time_sync(servers=["a.ntp"])
    assert result['overall_ok'] is False
    assert result['average_offset_s'] is None


def test_health_includes_ntp_when_enabled(app_ctx, monkeypatch):
    monkeypatch.setitem(app_ctx.config, 'HEALTH_CHECK_NTP', True)
    monkeypatch.setattr(health_monitor, "MIN_FREE_DISK_GB", 0)
    monkeypatch.setattr(health_monitor, "check_time_sync",
                        lambda max_offset: {"overall_ok": False, "max_allowed_offset_s": max_offset})

    result = health_monitor.check_health()
    assert result['overall_ok'] is False
    assert result['time']['max_allowed_offset_s'] == 0.5
    # Readiness ignores the clock
    assert health_monitor.check_ready()['overall_ok'] is True


def test_database_failure_reported(monkeypatch):
    def broken(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    monkeypatch.setattr(db.session, "execute", broken)
    result = health_monitor._check_db()
    assert result['ok'] is False
    assert "database is locked" in result['error']
