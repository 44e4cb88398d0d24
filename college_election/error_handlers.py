# college_election/error_handlers.py

# Maps exceptions onto JSON responses. Business-rule errors carry their own
# status code; anything unexpected is rolled back, logged and audited as a
# system_error before a generic 500 is returned.

import traceback

from flask import jsonify, request
from flask_limiter.errors import RateLimitExceeded
from werkzeug.exceptions import HTTPException

from college_election import app, db
from college_election.audit.audit_logger import audit_logger
from college_election.database.models import LogAction, LogStatus
from college_election.errors import AuthorizationError, ElectionSystemError


@app.errorhandler(ElectionSystemError)
def handle_election_system_error(error):
    if isinstance(error, AuthorizationError):
        app.logger.warning("Forbidden %s %s: %s", request.method, request.path, error.message)
    return jsonify(error.to_dict()), error.status_code


@app.errorhandler(RateLimitExceeded)
def handle_rate_limit(error):
    app.logger.warning("Rate limit exceeded for %s on %s", request.remote_addr, request.path)
    return jsonify({"error": "Too many requests, please try again later",
                    "code": "RateLimitExceeded",
                    "limit": str(error.description)}), 429


@app.errorhandler(HTTPException)
def handle_http_exception(error):
    return jsonify({"error": error.description, "code": error.name.replace(' ', '')}), error.code


@app.errorhandler(Exception)
def handle_unexpected_error(error):
    db.session.rollback()
    app.logger.exception("Unhandled error on %s %s", request.method, request.path)

    details = {"path": request.path, "method": request.method, "error": str(error)}
    if app.config.get('APP_ENV') != 'production':
        details["stack"] = traceback.format_exc()
    audit_logger.create_log(LogAction.SYSTEM_ERROR, None, details, status=LogStatus.FAILURE)

    return jsonify({"error": "Something went wrong", "code": "InternalServerError"}), 500
