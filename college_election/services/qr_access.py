# college_election/services/qr_access.py

import base64
import secrets
from io import BytesIO

import qrcode
from flask import current_app

from college_election import db
from college_election.audit.audit_logger import audit_logger
from college_election.database.models import LogAction, LogStatus, VotingTimeSlot
from college_election.errors import ValidationError, VotingWindowClosed
from college_election.security.input_validator import InputValidator
from college_election.services.elections import effective_state, election_engine, ensure_can_manage

# Public QR voting links: one long-lived token per election, switched on and off
# by qr_enabled and narrowed by optional voting time slots.


class QRAccessService:
    def __init__(self):
        self.validator = InputValidator()

    def generate_qr_token(self, election):
        """Create the access token once; later calls return the existing one."""
        if not election.qr_access_token:
            election.qr_access_token = secrets.token_hex(32)
            db.session.commit()
        return election.qr_access_token

    def voting_url(self, election):
        base_url = current_app.config.get('BASE_URL', 'http://localhost:5000').rstrip('/')
        return f"{base_url}/vote/{election.qr_access_token}"

    def render_qr(self, data):
        """Render data as a PNG data URL."""
        qr = qrcode.QRCode(box_size=10, border=2)
        qr.add_data(data)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")

        buffered = BytesIO()
        img.save(buffered, format="PNG")
        img_base64 = base64.b64encode(buffered.getvalue()).decode()
        return f"data:image/png;base64,{img_base64}"

    def generate_qr(self, actor, election_id):
        election = election_engine.get_election(election_id)
        ensure_can_manage(actor, election)
        token = self.generate_qr_token(election)
        url = self.voting_url(election)
        audit_logger.create_log(LogAction.TEACHER_ACTION, actor.user_id,
                                {'action_type': 'qr_generate', 'election_id': election.id},
                                status=LogStatus.SUCCESS)
        return {
            'qr_code': self.render_qr(url),
            'voting_url': url,
            'access_token': token,
            'qr_enabled': election.qr_enabled,
        }

    def toggle_qr_access(self, actor, election_id):
        election = election_engine.get_election(election_id)
        ensure_can_manage(actor, election)
        election.qr_enabled = not election.qr_enabled
        db.session.commit()
        audit_logger.create_log(LogAction.TEACHER_ACTION, actor.user_id,
                                {'action_type': 'qr_toggle', 'election_id': election.id,
                                 'qr_enabled': election.qr_enabled},
                                status=LogStatus.SUCCESS)
        return election.qr_enabled

    def add_voting_time_slot(self, actor, election_id, start_time, end_time):
        election = election_engine.get_election(election_id)
        ensure_can_manage(actor, election)
        start = self.validator.parse_datetime(start_time, 'start time')
        end = self.validator.parse_datetime(end_time, 'end time')
        if start >= end:
            raise ValidationError("Start time must be before end time")

        slot = VotingTimeSlot(start_time=start, end_time=end, is_active=True)
        election.voting_time_slots.append(slot)
        db.session.commit()
        audit_logger.create_log(LogAction.TEACHER_ACTION, actor.user_id,
                                {'action_type': 'time_slot_add', 'election_id': election.id,
                                 'start_time': start.isoformat(), 'end_time': end.isoformat()},
                                status=LogStatus.SUCCESS)
        return slot

    def update_public_access(self, actor, election_id, allow_anonymous_voting=None, require_roll_number=None):
        election = election_engine.get_election(election_id)
        ensure_can_manage(actor, election)
        if allow_anonymous_voting is not None:
            election.allow_anonymous_voting = self.validator.parse_bool(allow_anonymous_voting)
        if require_roll_number is not None:
            election.require_roll_number = self.validator.parse_bool(require_roll_number)
        db.session.commit()
        audit_logger.create_log(LogAction.TEACHER_ACTION, actor.user_id,
                                {'action_type': 'public_access_update', 'election_id': election.id,
                                 'allow_anonymous_voting': election.allow_anonymous_voting,
                                 'require_roll_number': election.require_roll_number},
                                status=LogStatus.SUCCESS)
        return election

    def public_ballot(self, token, now=None):
        election = election_engine.election_for_token(token)
        if not election_engine.is_voting_allowed(election, now):
            raise VotingWindowClosed(
                "Voting is not currently available for this election. Please check the voting schedule.")
        school_class = election.school_class
        return {
            'election': {
                'id': election.id,
                'title': election.title,
                'description': election.description,
                'election_type': election.election_type.value,
                'class_name': school_class.full_name if school_class else None,
                'end_date': election.end_date.isoformat(),
                'state': effective_state(election, now).value,
            },
            'candidates': [{'id': c.id,
                            'name': c.student.name if c.student else None,
                            'roll_number': c.student.roll_number if c.student else None,
                            'symbol': c.symbol.value,
                            'color': c.color,
                            'manifesto': c.manifesto}
                           for c in election.candidates if c.approved and c.active],
            'require_roll_number': election.require_roll_number,
        }


qr_access_service = QRAccessService()
