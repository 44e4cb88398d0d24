# college_election/authentication/rbac.py

from enum import Enum
from functools import wraps
from flask import current_app, g
from flask_jwt_extended import verify_jwt_in_request, get_jwt, get_jwt_identity
import requests
import logging

from college_election.database.models import Role
from college_election.errors import AuthenticationError, AuthorizationError

# Role-Based Access Control over an explicit, request-scoped AuthContext

logger = logging.getLogger(__name__)


class Permission(Enum):
    VOTE = "vote"
    VIEW_OWN_STATUS = "view_own_status"
    UPDATE_PROFILE = "update_profile"
    VIEW_ELECTIONS = "view_elections"
    MANAGE_ELECTIONS = "manage_elections"
    MANAGE_CANDIDATES = "manage_candidates"
    MANAGE_QR_ACCESS = "manage_qr_access"
    PUBLISH_RESULTS = "publish_results"
    VIEW_UNPUBLISHED_RESULTS = "view_unpublished_results"
    SEND_REMINDERS = "send_reminders"
    MANAGE_USERS = "manage_users"
    MANAGE_CLASSES = "manage_classes"
    VIEW_AUDIT_LOGS = "view_audit_logs"
    CREATE_BACKUP = "create_backup"


# Role -> Permissions mapping
ROLE_PERMISSIONS = {
    Role.STUDENT: [
        Permission.VOTE,
        Permission.VIEW_OWN_STATUS,
        Permission.UPDATE_PROFILE,
        Permission.VIEW_ELECTIONS,
    ],
    Role.TEACHER: [
        Permission.VIEW_ELECTIONS,
        Permission.MANAGE_ELECTIONS,
        Permission.MANAGE_CANDIDATES,
        Permission.MANAGE_QR_ACCESS,
        Permission.PUBLISH_RESULTS,
        Permission.VIEW_UNPUBLISHED_RESULTS,
        Permission.SEND_REMINDERS,
    ],
    Role.ADMIN: [
        Permission.VIEW_ELECTIONS,
        Permission.MANAGE_ELECTIONS,
        Permission.MANAGE_CANDIDATES,
        Permission.MANAGE_QR_ACCESS,
        Permission.PUBLISH_RESULTS,
        Permission.VIEW_UNPUBLISHED_RESULTS,
        Permission.SEND_REMINDERS,
        Permission.MANAGE_USERS,
        Permission.MANAGE_CLASSES,
        Permission.VIEW_AUDIT_LOGS,
        Permission.CREATE_BACKUP,
    ],
}


class AuthContext:
    """Who is making the current request. Built from the access token, never from session state."""

    def __init__(self, user_id, role, is_verified=False):
        self.user_id = int(user_id)
        self.role = role if isinstance(role, Role) else Role(role)
        self.is_verified = bool(is_verified)

    @classmethod
    def for_user(cls, user):
        return cls(user.id, user.role, user.is_verified)

    @property
    def is_admin(self):
        return self.role == Role.ADMIN

    @property
    def is_teacher(self):
        return self.role == Role.TEACHER

    @property
    def is_student(self):
        return self.role == Role.STUDENT

    def has_permission(self, permission):
        return RBACService().has_permission(self.role, permission)

    def __repr__(self):
        return f'<AuthContext user={self.user_id} role={self.role.value} verified={self.is_verified}>'


class RBACService:
    def has_permission(self, user_role, permission):
        if isinstance(user_role, str):
            user_role = Role(user_role)
        if isinstance(permission, str):
            permission = Permission(permission)
        return permission in ROLE_PERMISSIONS.get(user_role, [])

    def get_permissions(self, user_role):
        if isinstance(user_role, str):
            user_role = Role(user_role)
        return ROLE_PERMISSIONS.get(user_role, [])


def opa_check_permission(opa_url, user_role, permission):
    role_str = str(user_role).lower().strip()
    perm_str = str(permission).lower().strip()
    data = {
        "input": {
            "role": role_str,
            "permission": perm_str
        }
    }
    try:
        response = requests.post(opa_url, json=data, timeout=3)
        if response.status_code == 200:
            result = response.json()
            return bool(result.get("result", False))
        logger.warning("OPA responded with status %s", response.status_code)
    except requests.RequestException as e:
        logger.warning("OPA request error: %s", e)
    return False


def check_permission(context, permission):
    """Local role mapping, further restricted by OPA when OPA_URL is configured."""
    if not context.has_permission(permission):
        return False
    opa_url = current_app.config.get('OPA_URL')
    if opa_url:
        perm_str = permission.value if isinstance(permission, Enum) else str(permission)
        return opa_check_permission(opa_url, context.role.value, perm_str)
    return True


def current_auth_context(optional=False):
    """Return the AuthContext for this request's token and store it on flask.g."""
    verify_jwt_in_request(optional=optional)
    identity = get_jwt_identity()
    if identity is None:
        g.auth_context = None
        return None
    claims = get_jwt()
    try:
        context = AuthContext(identity, claims.get('role'), claims.get('verified', False))
    except (TypeError, ValueError):
        raise AuthenticationError("Invalid token claims")
    g.auth_context = context
    return context


def require_auth(verified=True):
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            context = current_auth_context()
            if verified and not context.is_verified:
                raise AuthorizationError("Please verify your email address before accessing this page")
            return func(*args, **kwargs)
        return wrapper
    return decorator


# Decorator for required permission
def require_permission(permission):
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            context = current_auth_context()
            if not context.is_verified:
                raise AuthorizationError("Please verify your email address before accessing this page")
            if not check_permission(context, permission):
                raise AuthorizationError()
            return func(*args, **kwargs)
        return wrapper
    return decorator


# Decorator for required role(s)
def require_role(*roles):
    allowed = {r if isinstance(r, Role) else Role(r) for r in roles}

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            context = current_auth_context()
            if not context.is_verified:
                raise AuthorizationError("Please verify your email address before accessing this page")
            if context.role not in allowed:
                raise AuthorizationError()
            return func(*args, **kwargs)
        return wrapper
    return decorator
