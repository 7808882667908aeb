# aac_practice/crud.py - user persistence
import logging
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from sqlalchemy.orm import Session

from . import models, schemas

logger = logging.getLogger(__name__)


class CRUDError(Exception):
    pass


def get_user(db: Session, user_id: int) -> Optional[models.User]:
    """Get user by ID with error handling."""
    try:
        return db.query(models.User).filter(models.User.id == user_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching user {user_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def get_user_by_identifier(db: Session, identifier: str) -> Optional[models.User]:
    """Get user by username OR email."""
    try:
        return db.query(models.User).filter(
            or_(models.User.username == identifier, models.User.email == identifier)
        ).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching user by identifier '{identifier}': {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def get_users(db: Session, skip: int = 0, limit: int = 100, role: Optional[str] = None) -> List[models.User]:
    query = db.query(models.User)
    if role:
        query = query.filter(models.User.role == role)
    return query.order_by(models.User.username).offset(skip).limit(limit).all()

def create_user(db: Session, user: schemas.UserCreate) -> models.User:
    """Create new user; username and email must be unique."""
    from .security import get_password_hash

    db_user = models.User(
        username=user.username,
        email=user.email,
        full_name=user.full_name,
        phone_number=user.phone_number,
        role=user.role,
        password_hash=get_password_hash(user.password),
        is_active=True,
    )
    try:
        db.add(db_user)
        db.commit()
        db.refresh(db_user)
    except IntegrityError:
        db.rollback()
        raise CRUDError(f"User '{user.username}' or email '{user.email}' already exists")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating user {user.username}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")
    logger.info(f"Created user {db_user.username} with role {db_user.role.value}")
    return db_user
