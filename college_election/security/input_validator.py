# college_election/security/input_validator.py

import re
import html
import bleach
from datetime import datetime, timezone

from college_election.errors import ValidationError

# Input validation and sanitization for user-supplied text


class InputValidator:
    def __init__(self, college_domain=''):
        self.college_domain = (college_domain or '').strip().lower()
        self.allowed_html_tags = ['b', 'i', 'em', 'strong', 'p', 'br']
        self.allowed_html_attributes = {}

        self.patterns = {
            'email': re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'),
            'roll_number': re.compile(r'^[A-Za-z0-9/_-]{1,32}$'),
            'color': re.compile(r'^#[0-9a-fA-F]{6}$'),
            'xss_script': re.compile(r'<script[^>]*>.*?</script>', re.IGNORECASE | re.DOTALL),
            'xss_event': re.compile(r'\bon\w+\s*=', re.IGNORECASE)
        }

    def sanitize_string(self, input_str, max_length=255):
        if not isinstance(input_str, str):
            raise ValidationError("Input must be a string")
        if len(input_str) > max_length:
            input_str = input_str[:max_length]

        sanitized = re.sub(self.patterns['xss_script'], '', input_str)
        sanitized = re.sub(self.patterns['xss_event'], '', sanitized)
        sanitized = bleach.clean(sanitized, tags=self.allowed_html_tags,
                                 attributes=self.allowed_html_attributes, strip=True)
        return sanitized.strip()

    def sanitize_plain(self, input_str, max_length=255):
        """Strip all markup; used for names and titles."""
        if not isinstance(input_str, str):
            raise ValidationError("Input must be a string")
        cleaned = bleach.clean(input_str[:max_length], tags=[], attributes={}, strip=True)
        return html.unescape(cleaned).strip()

    def require(self, data, *fields):
        missing = [f for f in fields if data.get(f) in (None, '')]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    def normalize_email(self, email):
        if not isinstance(email, str):
            return ''
        return email.strip().lower()

    def validate_email(self, email):
        return isinstance(email, str) and bool(self.patterns['email'].match(email))

    def is_college_email(self, email):
        """True when no college domain is configured or the domain matches."""
        if not self.college_domain:
            return True
        if not self.validate_email(email):
            return False
        return email.rsplit('@', 1)[1].lower() == self.college_domain

    def validate_roll_number(self, roll_number):
        return isinstance(roll_number, str) and bool(self.patterns['roll_number'].match(roll_number))

    def validate_color(self, color):
        return isinstance(color, str) and bool(self.patterns['color'].match(color))

    def parse_datetime(self, value, field='date'):
        """Parse an ISO-8601 value into a naive UTC datetime."""
        if isinstance(value, datetime):
            parsed = value
        else:
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{field} is required")
            try:
                parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
            except ValueError:
                raise ValidationError(f"Invalid {field} format")
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed

    def parse_int(self, value, field='id'):
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid {field}")

    def parse_bool(self, value):
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ('1', 'true', 'yes', 'on')
