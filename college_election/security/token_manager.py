# college_election/security/token_manager.py
from datetime import timedelta
from flask_jwt_extended import (
    create_access_token, create_refresh_token, decode_token, get_jwt_identity,
    set_access_cookies, set_refresh_cookies, unset_jwt_cookies,
)
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt.exceptions import PyJWTError
from flask import current_app, Flask


# JWT access/refresh tokens carrying the user's role and verification state
class TokenManager:
    def __init__(self, app: Flask = None):
        if app:
            self.init_app(app)

    def init_app(self, app: Flask):
        app.config.setdefault("JWT_SECRET_KEY", "change_this_secret_key")
        app.config.setdefault("JWT_ACCESS_TOKEN_EXPIRES", timedelta(minutes=30))

    @staticmethod
    def _claims(user) -> dict:
        return {"role": user.role.value, "verified": bool(user.is_verified)}

    def generate_token(self, user, expires_in: int = None) -> str:
        # Identity is the user id as a string; role and verified ride along as claims.
        expires_delta = timedelta(seconds=expires_in) if expires_in else None
        return create_access_token(identity=str(user.id), additional_claims=self._claims(user),
                                   expires_delta=expires_delta)

    def generate_refresh_token(self, user) -> str:
        return create_refresh_token(identity=str(user.id), additional_claims=self._claims(user))

    def issue_tokens(self, user) -> dict:
        return {
            "access_token": self.generate_token(user),
            "refresh_token": self.generate_refresh_token(user),
            "token_type": "Bearer",
        }

    def attach_cookies(self, response, tokens: dict):
        set_access_cookies(response, tokens["access_token"])
        set_refresh_cookies(response, tokens["refresh_token"])
        return response

    def clear_cookies(self, response):
        unset_jwt_cookies(response)
        return response

    def validate_token(self, token: str):
        # Return the user_id if token is valid, else None.
        try:
            decoded = decode_token(token, allow_expired=False)
            return int(decoded.get("sub"))  # 'sub' is the identity field
        except (JWTExtendedException, PyJWTError, TypeError, ValueError) as e:
            current_app.logger.warning(f"Token validation failed: {str(e)}")
            return None

    def get_identity(self):
        # Return the current user id from the JWT in request context.
        identity = get_jwt_identity()
        return int(identity) if identity is not None else None


token_manager = TokenManager()
