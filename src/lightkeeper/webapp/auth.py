"""Authentication service for the web API."""

import logging
import secrets
from datetime import timedelta
from typing import Optional

import bcrypt
import jwt

from ..database import Database
from ..models import User, UserRole
from ..utils.datetime import now_utc


logger = logging.getLogger(__name__)


JWT_ALGORITHM = 'HS256'
PASSWORD_MIN_LENGTH = 8

# Password Configuration
BCRYPT_ROUNDS = 12


class AuthenticationError(Exception):
    """Authentication failed."""
    pass


class AuthService:
    """Password hashing, login and access tokens."""

    def __init__(self, db: Database, secret_key: Optional[str] = None,
                 access_token_expire_minutes: int = 24 * 60,
                 bcrypt_rounds: int = BCRYPT_ROUNDS):
        """Initialize auth service.

        Args:
            db: Database holding users
            secret_key: JWT signing key; a random per-process key when None
            access_token_expire_minutes: Access token lifetime
            bcrypt_rounds: bcrypt cost factor
        """
        self.db = db
        self.secret_key = secret_key or secrets.token_urlsafe(64)
        self.access_token_expire_minutes = access_token_expire_minutes
        self.bcrypt_rounds = bcrypt_rounds
        self.logger = logging.getLogger(__name__)

        if secret_key is None:
            self.logger.warning("JWT_SECRET not set, tokens will not survive a restart")

    # Password Management

    def hash_password(self, password: str) -> str:
        """Hash a password using bcrypt."""
        salt = bcrypt.gensalt(rounds=self.bcrypt_rounds)
        return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        """Verify a password against its hash; malformed hashes never match."""
        if not password_hash:
            return False
        try:
            return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
        except ValueError as e:
            logger.error(f"Password verification failed: {e}")
            return False

    # User Registration & Authentication

    async def register_user(self, email: str, name: str, password: str,
                            role: UserRole = UserRole.MEMBER) -> User:
        """Register a new user.

        Raises:
            ValueError: If the password is too short or the email is taken
        """
        if len(password) < PASSWORD_MIN_LENGTH:
            raise ValueError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")

        user = await self.db.create_user(
            email=email,
            name=name,
            password_hash=self.hash_password(password),
            role=role,
        )
        self.logger.info(f"Registered new user: {user.email}")
        return user

    async def authenticate_user(self, email: str, password: str) -> User:
        """Authenticate a user by email and password.

        Raises:
            AuthenticationError: If authentication fails
        """
        user = await self.db.get_user_by_email(email)
        if not user or not self.verify_password(password, user.password_hash):
            raise AuthenticationError("Invalid credentials")
        if not user.is_active:
            raise AuthenticationError("Account is disabled")

        self.logger.info(f"User authenticated: {user.email}")
        return user

    # Token Management

    def create_access_token(self, user: User) -> str:
        payload = {
            'sub': str(user.id),
            'role': user.role.value,
            'type': 'access',
            'exp': now_utc() + timedelta(minutes=self.access_token_expire_minutes),
        }
        return jwt.encode(payload, self.secret_key, algorithm=JWT_ALGORITHM)

    def verify_token(self, token: str) -> Optional[dict]:
        """Decode an access token, or return None if it is invalid or expired."""
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[JWT_ALGORITHM])
        except jwt.ExpiredSignatureError:
            self.logger.debug("Token expired")
            return None
        except jwt.InvalidTokenError as e:
            self.logger.warning(f"Invalid token: {e}")
            return None

        if payload.get('type') != 'access':
            self.logger.warning(f"Token type mismatch: expected access, got {payload.get('type')}")
            return None
        return payload

    async def get_current_user(self, token: str) -> Optional[User]:
        """Get user from access token."""
        payload = self.verify_token(token)
        if not payload:
            return None
        try:
            user_id = int(payload['sub'])
        except (KeyError, ValueError):
            return None
        return await self.db.get_user_by_id(user_id)
