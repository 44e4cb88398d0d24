# college_election/encryption/password_hashing.py

import secrets
from argon2 import PasswordHasher
from argon2.exceptions import VerifyMismatchError, VerificationError, InvalidHashError, HashingError

from college_election.errors import WeakPassword

MIN_PASSWORD_LENGTH = 8

# Password hashing and verification using Argon2id


class PasswordHashingService:
    def __init__(self):
        self.ph = PasswordHasher(
            time_cost=3,
            memory_cost=65536,
            parallelism=4,
            hash_len=32,
            salt_len=16,
        )

    def hash_password(self, password: str) -> str:
        if not self.is_strong_password(password):
            raise WeakPassword()
        try:
            return self.ph.hash(password)
        except HashingError as e:
            raise ValueError(f"Password hashing failed: {str(e)}")

    def verify_password(self, password: str, hash_value: str) -> bool:
        if not password or not hash_value:
            return False
        try:
            self.ph.verify(hash_value, password)
            return True
        except VerifyMismatchError:
            return False
        except (VerificationError, InvalidHashError):
            return False

    def needs_rehash(self, hash_value: str) -> bool:
        return self.ph.check_needs_rehash(hash_value)

    def is_strong_password(self, password: str) -> bool:
        return isinstance(password, str) and len(password) >= MIN_PASSWORD_LENGTH

    def generate_secure_password(self, length=16) -> str:
        if length < 12:
            length = 12
        charset = (
            "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789!@#$%^&*(),.?\":{}|<>"
        )
        return ''.join(secrets.choice(charset) for _ in range(length))
