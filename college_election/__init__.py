# college_election/__init__.py

from flask import Flask, jsonify, request
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
import logging
import os
from flask_jwt_extended import JWTManager
from datetime import timedelta


def _env_flag(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

app = Flask(__name__)
app.config['APP_ENV'] = os.environ.get('APP_ENV', 'development')
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'change-me-in-production')
app.config['BASE_URL'] = os.environ.get('BASE_URL', 'http://localhost:5000')
app.config['COLLEGE_EMAIL_DOMAIN'] = os.environ.get('COLLEGE_EMAIL_DOMAIN', '')

# Access tokens carry the user's role and verification state
app.config['JWT_SECRET_KEY'] = os.environ.get('JWT_SECRET_KEY', 'change-me-in-production-college-election')
app.config['JWT_ACCESS_TOKEN_EXPIRES'] = timedelta(minutes=int(os.environ.get('JWT_ACCESS_TOKEN_MINUTES', '30')))
app.config['JWT_REFRESH_TOKEN_EXPIRES'] = timedelta(minutes=int(os.environ.get('JWT_REFRESH_TOKEN_MINUTES', '720')))
app.config['JWT_TOKEN_LOCATION'] = ['headers', 'cookies']
app.config['JWT_COOKIE_CSRF_PROTECT'] = _env_flag('JWT_COOKIE_CSRF_PROTECT', False)
app.config['JWT_ACCESS_COOKIE_PATH'] = '/'
app.config['JWT_COOKIE_SECURE'] = app.config['APP_ENV'] == 'production'

jwt = JWTManager(app)


@jwt.expired_token_loader
def expired_token_callback(jwt_header, jwt_payload):
    return jsonify({"error": "Token has expired", "code": "TokenExpired"}), 401


@jwt.unauthorized_loader
def missing_token_callback(reason):
    return jsonify({"error": "Please log in to access this page", "code": "AuthenticationError"}), 401


@jwt.invalid_token_loader
def invalid_token_callback(reason):
    return jsonify({"error": "Invalid token", "code": "AuthenticationError"}), 401


app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get(
    'DATABASE_URL', 'sqlite:///college_election.db'
)
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

# Optional external policy decision point, see authentication/rbac.py
app.config['OPA_URL'] = os.environ.get('OPA_URL', '')

# Outbound mail (notifications/mailer.py)
app.config['MAIL_SERVER'] = os.environ.get('MAIL_SERVER', '')
app.config['MAIL_PORT'] = int(os.environ.get('MAIL_PORT', '587'))
app.config['MAIL_USE_TLS'] = _env_flag('MAIL_USE_TLS', True)
app.config['MAIL_USERNAME'] = os.environ.get('MAIL_USERNAME', '')
app.config['MAIL_PASSWORD'] = os.environ.get('MAIL_PASSWORD', '')
app.config['MAIL_DEFAULT_SENDER'] = os.environ.get(
    'MAIL_DEFAULT_SENDER', 'College Election System <no-reply@localhost>'
)
app.config['MAIL_SUPPRESS_SEND'] = _env_flag('MAIL_SUPPRESS_SEND', False)
app.config['MAIL_MAX_RETRIES'] = int(os.environ.get('MAIL_MAX_RETRIES', '3'))
app.config['MAIL_BACKOFF_SECONDS'] = float(os.environ.get('MAIL_BACKOFF_SECONDS', '1'))

# Backups (operations/backup_manager.py)
app.config['BACKUP_OUTDIR'] = os.environ.get('BACKUP_OUTDIR', './backups')
app.config['BACKUP_AES256_KEY'] = os.environ.get('BACKUP_AES256_KEY', '')
app.config['BACKUP_UPLOAD_URL'] = os.environ.get('BACKUP_UPLOAD_URL', '')

# Health checks (operations/health_monitor.py)
app.config['HEALTH_CHECK_NTP'] = _env_flag('HEALTH_CHECK_NTP', False)
app.config['MAX_TIME_OFFSET_S'] = float(os.environ.get('MAX_TIME_OFFSET_S', '0.5'))

# Fix proxy headers for HTTPS
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)

# Initialize extensions
db = SQLAlchemy(app)  # Database ORM
migrate = Migrate(app, db, directory=os.path.join(os.path.dirname(__file__), 'database', 'migrations'))

# Rate limiter; point RATELIMIT_STORAGE_URI at redis:// in production
app.config['RATELIMIT_ENABLED'] = _env_flag('RATELIMIT_ENABLED', True)
app.config['VOTE_RATE_LIMIT'] = os.environ.get('VOTE_RATE_LIMIT', '10/minute')
app.config['LOGIN_RATE_LIMIT'] = os.environ.get('LOGIN_RATE_LIMIT', '20/minute')
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["1000/hour"],
    storage_uri=os.environ.get('RATELIMIT_STORAGE_URI', 'memory://'),
)
limiter.init_app(app)


def client_info():
    """Return (ip, user_agent) for the current request."""
    return request.remote_addr, request.headers.get('User-Agent', '')


# Ensure model modules are imported so SQLAlchemy metadata is populated
# This makes models discoverable by Flask-Migrate / Alembic when running
# `flask db migrate`.
from college_election.database import models  # noqa: F401,E402

from college_election import error_handlers  # noqa: F401,E402
from college_election import routes  # noqa: F401,E402  Import Flask routes
from college_election import create_user  # noqa: F401,E402  CLI commands
