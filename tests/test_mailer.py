import smtplib
from unittest.mock import patch

import pytest

from college_election.notifications.mailer import election_info, mailer


@pytest.fixture
def live_mail(app_ctx, monkeypatch):
    """Turn real delivery on against a fake SMTP server."""
    monkeypatch.setitem(app_ctx.config, 'MAIL_SUPPRESS_SEND', False)
    monkeypatch.setitem(app_ctx.config, 'MAIL_SERVER', 'smtp.college.test')
    monkeypatch.setitem(app_ctx.config, 'MAIL_USERNAME', 'mailer')
    monkeypatch.setitem(app_ctx.config, 'MAIL_PASSWORD', 'secret')
    sleeps = []
    monkeypatch.setattr("college_election.notifications.mailer.time.sleep", sleeps.append)
    with patch("college_election.notifications.mailer.smtplib.SMTP") as smtp_cls:
        yield smtp_cls.return_value.__enter__.return_value, sleeps


def test_suppressed_mail_goes_to_outbox():
    result = mailer.send_email("a@college.edu", "Hello", "<p>Hi</p>", text="Hi")
    assert result['success'] is True
    assert mailer.outbox[-1]['to'] == "a@college.edu"
    assert mailer.outbox[-1]['message_id'] == result['message_id']


def test_delivery_over_smtp(live_mail):
    smtp, sleeps = live_mail
    result = mailer.send_email("a@college.edu", "Hello", "<p>Hi</p>")

    assert result['success'] is True
    smtp.starttls.assert_called_once()
    smtp.login.assert_called_once_with('mailer', 'secret')
    message = smtp.send_message.call_args.args[0]
    assert message['To'] == "a@college.edu"
    assert message['Subject'] == "Hello"
    assert sleeps == []
    assert mailer.outbox == []


def test_retries_with_backoff(live_mail):
    smtp, sleeps = live_mail
    smtp.send_message.side_effect = [smtplib.SMTPServerDisconnected("gone"), None]

    result = mailer.send_email("a@college.edu", "Hello", "<p>Hi</p>")
    assert result['success'] is True
    assert sleeps == [1.0]


def test_gives_up_after_max_retries(live_mail):
    smtp, sleeps = live_mail
    smtp.send_message.side_effect = OSError("connection refused")

    result = mailer.send_email("a@college.edu", "Hello", "<p>Hi</p>")
    assert result == {'success': False, 'error': "connection refused"}
    assert smtp.send_message.call_count == 3
    assert sleeps == [1.0, 2.0]


def test_missing_server_fails(app_ctx, monkeypatch):
    monkeypatch.setitem(app_ctx.config, 'MAIL_SUPPRESS_SEND', False)
    monkeypatch.setitem(app_ctx.config, 'MAIL_SERVER', '')
    monkeypatch.setitem(app_ctx.config, 'MAIL_MAX_RETRIES', 1)
    result = mailer.send_email("a@college.edu", "Hello", "<p>Hi</p>")
    assert result['success'] is False
    assert "MAIL_SERVER" in result['error']


def test_verification_email_content():
    mailer.send_verification_email("a@college.edu", "<Asha>", "tok123")
    sent = mailer.outbox[-1]
    assert "http://localhost:5000/auth/verify/tok123" in sent['html']
    assert "&lt;Asha&gt;" in sent['html']
    assert "24 hours" in sent['text']


def test_election_emails(open_election):
    info = election_info(open_election)
    assert info['start_date'] == "2031-05-01 09:00 UTC"

    mailer.send_voting_reminder_email("a@college.edu", "Asha", info)
    sent = mailer.outbox[-1]
    assert sent['subject'] == "College Election System - Reminder: Class Representative"
    assert f"/elections/{open_election.id}" in sent['html']
