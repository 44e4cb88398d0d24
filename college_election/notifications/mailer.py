# college_election/notifications/mailer.py

import html
import logging
import smtplib
import time
from email.message import EmailMessage
from email.utils import make_msgid

from flask import current_app

logger = logging.getLogger(__name__)

# Outbound notifications over SMTP. With MAIL_SUPPRESS_SEND the messages are
# kept in an in-memory outbox instead of being delivered.

_BUTTON = ('<div style="text-align: center; margin: 30px 0;">'
           '<a href="{url}" style="background-color: {color}; color: white; padding: 10px 20px; '
           'text-decoration: none; border-radius: 5px; font-weight: bold;">{label}</a></div>')

_FRAME = ('<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; '
          'padding: 20px; border: 1px solid #ddd; border-radius: 5px;">{body}'
          '<p>Best regards,<br>College Election System Team</p></div>')


class Mailer:
    def __init__(self):
        self.outbox = []

    def _config(self, key, default=None):
        return current_app.config.get(key, default)

    def _deliver(self, message):
        server = self._config('MAIL_SERVER')
        if not server:
            raise smtplib.SMTPException("MAIL_SERVER is not configured")
        with smtplib.SMTP(server, self._config('MAIL_PORT', 587), timeout=10) as smtp:
            if self._config('MAIL_USE_TLS', True):
                smtp.starttls()
            username = self._config('MAIL_USERNAME')
            if username:
                smtp.login(username, self._config('MAIL_PASSWORD', ''))
            smtp.send_message(message)

    def send_email(self, to, subject, html_body, text=None):
        """Send one message. Returns {success, message_id} or {success: False, error}; never raises."""
        message = EmailMessage()
        message['From'] = self._config('MAIL_DEFAULT_SENDER')
        message['To'] = to
        message['Subject'] = subject
        message['Message-ID'] = make_msgid(domain='college-election')
        message.set_content(text or '')
        message.add_alternative(html_body, subtype='html')
        message_id = message['Message-ID']

        if self._config('MAIL_SUPPRESS_SEND', False):
            self.outbox.append({
                'to': to,
                'subject': subject,
                'html': html_body,
                'text': text or '',
                'message_id': message_id,
            })
            logger.info("Email to %s suppressed (%s)", to, subject)
            return {'success': True, 'message_id': message_id}

        retries = max(int(self._config('MAIL_MAX_RETRIES', 3)), 1)
        backoff = float(self._config('MAIL_BACKOFF_SECONDS', 1))
        last_error = None
        for attempt in range(retries):
            try:
                self._deliver(message)
                return {'success': True, 'message_id': message_id}
            except (smtplib.SMTPException, OSError) as e:
                last_error = e
                logger.warning("Email send attempt %d/%d to %s failed: %s", attempt + 1, retries, to, e)
                if attempt + 1 < retries:
                    time.sleep(backoff * (2 ** attempt))

        logger.error("Email sending failed: %s", last_error)
        return {'success': False, 'error': str(last_error)}

    def _url(self, path):
        return f"{self._config('BASE_URL', 'http://localhost:5000').rstrip('/')}{path}"

    def send_verification_email(self, to, name, token):
        url = self._url(f'/auth/verify/{token}')
        body = (
            '<h2 style="color: #4a4a4a;">Email Verification</h2>'
            f'<p>Hello {html.escape(name)},</p>'
            '<p>Thank you for registering with the College Election System. '
            'Please verify your email address by clicking the button below:</p>'
            + _BUTTON.format(url=url, color='#4CAF50', label='Verify Email') +
            f'<p><a href="{url}">{url}</a></p>'
            '<p>This link will expire in 24 hours.</p>'
            '<p>If you did not request this verification, please ignore this email.</p>'
        )
        text = f"Hello {name},\n\nVerify your email address: {url}\nThis link will expire in 24 hours.\n"
        return self.send_email(to, 'College Election System - Email Verification',
                               _FRAME.format(body=body), text)

    def send_password_reset_email(self, to, name, token):
        url = self._url(f'/auth/reset-password/{token}')
        body = (
            '<h2 style="color: #4a4a4a;">Password Reset</h2>'
            f'<p>Hello {html.escape(name)},</p>'
            '<p>You requested a password reset for your College Election System account. '
            'Click the button below to reset your password:</p>'
            + _BUTTON.format(url=url, color='#2196F3', label='Reset Password') +
            f'<p><a href="{url}">{url}</a></p>'
            '<p>This link will expire in 1 hour.</p>'
            '<p>If you did not request this password reset, please ignore this email or contact support.</p>'
        )
        text = f"Hello {name},\n\nReset your password: {url}\nThis link will expire in 1 hour.\n"
        return self.send_email(to, 'College Election System - Password Reset',
                               _FRAME.format(body=body), text)

    def _election_details(self, election_info):
        return (
            '<div style="background-color: #f5f5f5; padding: 15px; border-radius: 5px; margin: 20px 0;">'
            '<p><strong>Election Details:</strong></p>'
            f"<p><strong>Title:</strong> {html.escape(election_info['title'])}</p>"
            f"<p><strong>Description:</strong> {html.escape(election_info.get('description') or '')}</p>"
            f"<p><strong>Start Date:</strong> {election_info['start_date']}</p>"
            f"<p><strong>End Date:</strong> {election_info['end_date']}</p>"
            '</div>'
        )

    def send_election_notification_email(self, to, name, election_info):
        url = self._url(f"/elections/{election_info['id']}")
        body = (
            f"<h2 style=\"color: #4a4a4a;\">{html.escape(election_info['title'])} Election</h2>"
            f'<p>Hello {html.escape(name)},</p>'
            f"<p>We are pleased to inform you about the upcoming {html.escape(election_info['title'])} election.</p>"
            + self._election_details(election_info)
            + _BUTTON.format(url=url, color='#FF5722', label='View Election') +
            '<p>Please make sure to cast your vote before the election ends.</p>'
        )
        return self.send_email(to, f"College Election System - {election_info['title']} Election",
                               _FRAME.format(body=body))

    def send_voting_reminder_email(self, to, name, election_info):
        url = self._url(f"/elections/{election_info['id']}")
        body = (
            '<h2 style="color: #4a4a4a;">Voting Reminder</h2>'
            f'<p>Hello {html.escape(name)},</p>'
            f"<p>You have not yet voted in the {html.escape(election_info['title'])} election.</p>"
            + self._election_details(election_info)
            + _BUTTON.format(url=url, color='#FF5722', label='Vote Now') +
            '<p>Voting closes at the end date shown above.</p>'
        )
        return self.send_email(to, f"College Election System - Reminder: {election_info['title']}",
                               _FRAME.format(body=body))


def election_info(election):
    return {
        'id': election.id,
        'title': election.title,
        'description': election.description,
        'start_date': election.start_date.strftime('%Y-%m-%d %H:%M UTC'),
        'end_date': election.end_date.strftime('%Y-%m-%d %H:%M UTC'),
    }


mailer = Mailer()
