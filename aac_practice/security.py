# aac_practice/security.py
import base64
import hashlib
import json
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from . import crud, models
from .config import Settings, get_settings
from .database import get_db

security_logger = logging.getLogger("security")

pwd_context = CryptContext(
    schemes=["argon2"],
    deprecated="auto",
    argon2__rounds=4,
    argon2__memory_cost=65536,
    argon2__parallelism=1,
)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/v1/auth/token")

PBKDF2_ITERATIONS = 390000


def derive_fernet_key(secret: str, salt: str) -> bytes:
    """Return `secret` if it already is a Fernet key, otherwise stretch it with PBKDF2."""
    try:
        raw = base64.urlsafe_b64decode(secret.encode())
        if len(raw) == 32:
            return secret.encode()
    except (ValueError, TypeError):
        pass
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode(),
        iterations=PBKDF2_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode()))


class EncryptionService:
    """Authenticated encryption for sensitive data.

    The first key encrypts; every configured key can decrypt, so retired
    keys stay listed in ``previous_keys`` until data has been rotated.
    """

    def __init__(self, key: str, salt: str = "aac-practice-phi", previous_keys: Optional[List[str]] = None):
        keys = [key] + list(previous_keys or [])
        self._fernet = MultiFernet([Fernet(derive_fernet_key(k, salt)) for k in keys])

    @classmethod
    def from_settings(cls, settings: Settings) -> "EncryptionService":
        return cls(settings.encryption_key, settings.encryption_salt, settings.previous_encryption_keys)

    def encrypt(self, data: str) -> bytes:
        """Encrypt sensitive data"""
        return self._fernet.encrypt(data.encode())

    def decrypt(self, encrypted_data: bytes) -> str:
        """Decrypt sensitive data; raises cryptography's InvalidToken on tampering"""
        return self._fernet.decrypt(encrypted_data).decode()

    def encrypt_json(self, payload: Dict[str, Any]) -> bytes:
        return self.encrypt(json.dumps(payload, default=str, sort_keys=True))

    def decrypt_json(self, token: bytes) -> Dict[str, Any]:
        return json.loads(self.decrypt(token))

    def rotate(self, token: bytes) -> bytes:
        """Re-encrypt a token under the current primary key"""
        return self._fernet.rotate(token)

    def self_test(self) -> bool:
        probe = secrets.token_hex(8)
        try:
            return self.decrypt(self.encrypt(probe)) == probe
        except InvalidToken:
            return False

    @staticmethod
    def hash_for_lookup(data: str) -> str:
        """Create a hash for searchable lookups (one-way)"""
        if not data:
            return ""
        return hashlib.sha256(data.lower().strip().encode()).hexdigest()


# Password utilities
def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        security_logger.warning("Password hash could not be parsed")
        return False

def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


# JWT utilities
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token"""
    settings = get_settings()
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))

    to_encode.update({
        "exp": expire,
        "type": "access",
        "iat": now,
        "jti": secrets.token_urlsafe(16),
    })
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)

def verify_token(token: str, token_type: str = "access") -> Optional[Dict[str, Any]]:
    """Verify and decode JWT token"""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
    if payload.get("type") != token_type:
        return None
    return payload


# Dependencies for FastAPI
async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db)
) -> models.User:
    """Resolve the bearer token to an active user"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = verify_token(token, "access")
    if not payload:
        raise credentials_exception

    user_id = payload.get("user_id")
    if not payload.get("sub") or not user_id:
        raise credentials_exception

    user = crud.get_user(db, user_id=user_id)
    if not user:
        raise credentials_exception

    if not user.is_active:
        security_logger.warning(f"Inactive user {user_id} rejected")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive"
        )
    return user

def require_role(*allowed_roles: str):
    """Dependency factory for role-based access control"""
    def role_dependency(current_user: models.User = Depends(get_current_user)) -> models.User:
        if current_user.role.value not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {', '.join(allowed_roles)}"
            )
        return current_user

    return role_dependency

require_admin = require_role("admin")
require_billing = require_role("admin", "billing")
require_clinical = require_role("admin", "therapist", "staff")
