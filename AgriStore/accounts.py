"""
E-mail verification and password reset tokens.

A token is a random hex string stored with its purpose and expiry. Mailing it
to the user is left to an outbound mailer; the token is only logged at debug
level here. Redeeming a token deletes it, so each one works once.
"""
import logging
import secrets
from datetime import timedelta, timezone

from sqlalchemy.orm import Session

from errors import NotFoundError, StoreError
from models import TokenPurpose, User, VerificationToken, utcnow
from security import get_password_hash

logger = logging.getLogger(__name__)

TOKEN_TTL = {
    TokenPurpose.EMAIL_VERIFICATION: timedelta(hours=24),
    TokenPurpose.PASSWORD_RESET: timedelta(hours=1),
}


class AccountTokenError(StoreError):
    pass


def _expired(token: VerificationToken) -> bool:
    expires_at = token.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at < utcnow()


def issue_token(db: Session, user: User, purpose: TokenPurpose) -> VerificationToken:
    """Replace any outstanding token of ``purpose`` for ``user`` with a new one."""
    db.query(VerificationToken).filter(
        VerificationToken.user_id == user.id, VerificationToken.purpose == purpose.value
    ).delete(synchronize_session=False)
    token = VerificationToken(
        user_id=user.id,
        token=secrets.token_hex(32),
        purpose=purpose.value,
        expires_at=utcnow() + TOKEN_TTL[purpose],
    )
    db.add(token)
    db.commit()
    db.refresh(token)
    logger.info("Issued %s token for user %s", purpose.value, user.id)
    logger.debug("%s token for user %s: %s", purpose.value, user.id, token.token)
    return token


def _redeem(db: Session, value: str, purpose: TokenPurpose, label: str) -> User:
    token = (
        db.query(VerificationToken)
        .filter(VerificationToken.token == value, VerificationToken.purpose == purpose.value)
        .first()
    )
    if token is None:
        raise AccountTokenError(f"Invalid {label}")
    if _expired(token):
        db.delete(token)
        db.commit()
        raise AccountTokenError(f"{label.capitalize()} has expired")
    user = token.user
    if user is None:
        raise NotFoundError("User not found")
    db.delete(token)
    return user


def request_email_verification(db: Session, user: User) -> VerificationToken:
    if user.email_verified:
        raise AccountTokenError("Email is already verified")
    return issue_token(db, user, TokenPurpose.EMAIL_VERIFICATION)


def verify_email(db: Session, value: str) -> User:
    user = _redeem(db, value, TokenPurpose.EMAIL_VERIFICATION, "verification token")
    user.email_verified = utcnow()
    db.commit()
    db.refresh(user)
    logger.info("User %s verified their email", user.id)
    return user


def request_password_reset(db: Session, email: str):
    """Issue a reset token when ``email`` belongs to an account.

    Returns None for unknown addresses; callers answer the same either way.
    """
    user = db.query(User).filter(User.email == email.lower()).first()
    if user is None:
        logger.info("Password reset requested for an unknown email")
        return None
    return issue_token(db, user, TokenPurpose.PASSWORD_RESET)


def reset_password(db: Session, value: str, new_password: str) -> User:
    user = _redeem(db, value, TokenPurpose.PASSWORD_RESET, "reset token")
    user.password_hash = get_password_hash(new_password)
    # redeeming a mailed token also confirms the address
    if not user.email_verified:
        user.email_verified = utcnow()
    db.commit()
    db.refresh(user)
    logger.info("User %s reset their password", user.id)
    return user
