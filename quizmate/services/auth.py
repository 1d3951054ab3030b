import secrets
from datetime import datetime, timedelta
from typing import Optional
import bcrypt
from sqlmodel import Session, select

from ..models.user import User
from ..models.session import Session as UserSession
from ..config import SESSION_EXPIRE_DAYS


def _password_bytes(password: str) -> bytes:
    # bcrypt only looks at the first 72 bytes
    return password.encode("utf-8")[:72]


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(_password_bytes(password), salt).decode()


def verify_password(password: str, hashed: str) -> bool:
    """Verify a password against its hash."""
    return bcrypt.checkpw(_password_bytes(password), hashed.encode())


def create_session(db: Session, user_id: int) -> str:
    """Create a new session for a user and return the session token."""
    session_token = secrets.token_urlsafe(32)
    expires_at = datetime.utcnow() + timedelta(days=SESSION_EXPIRE_DAYS)

    user_session = UserSession(
        user_id=user_id,
        session_token=session_token,
        expires_at=expires_at
    )
    db.add(user_session)
    db.commit()

    return session_token


def delete_session(db: Session, session_token: str) -> Optional[int]:
    """Delete a session (logout). Returns the user it belonged to, if any."""
    statement = select(UserSession).where(UserSession.session_token == session_token)
    user_session = db.exec(statement).first()
    if not user_session:
        return None
    user_id = user_session.user_id
    db.delete(user_session)
    db.commit()
    return user_id


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    """Get a user by email."""
    statement = select(User).where(User.email == email)
    return db.exec(statement).first()


def create_user(
    db: Session,
    email: str,
    password: str,
    full_name: str
) -> User:
    """Create a new user."""
    user = User(
        email=email,
        password_hash=hash_password(password),
        full_name=full_name
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def authenticate_user(db: Session, email: str, password: str) -> Optional[User]:
    """Authenticate a user by email and password."""
    user = get_user_by_email(db, email)

    if not user:
        return None

    if not verify_password(password, user.password_hash):
        return None

    return user
