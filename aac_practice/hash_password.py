# aac_practice/hash_password.py
# Initializes the admin user on startup.
import logging
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .database import SessionLocal
from .models import UserRole

logger = logging.getLogger(__name__)


def create_or_update_admin(settings: Optional[Settings] = None,
                           session_factory: Callable[[], Session] = SessionLocal) -> None:
    """
    Create the admin account from ADMIN_USERNAME / ADMIN_PASSWORD, or re-sync
    its password and role when it already exists. Does nothing unless both are set.
    """
    # Local imports to break the security -> crud -> schemas cycle
    from . import crud, schemas
    from .security import get_password_hash, verify_password

    settings = settings or get_settings()
    if not settings.admin_username or not settings.admin_password:
        logger.info("No admin credentials configured; skipping admin bootstrap")
        return

    db = session_factory()
    try:
        admin = crud.get_user_by_identifier(db, settings.admin_username)
        if admin:
            admin.role = UserRole.admin
            admin.is_active = True
            if not verify_password(settings.admin_password, admin.password_hash):
                admin.password_hash = get_password_hash(settings.admin_password)
            db.commit()
            logger.info("Admin user verified/updated.")
        else:
            crud.create_user(db, schemas.UserCreate.model_construct(
                username=settings.admin_username,
                email=settings.admin_email,
                full_name="Administrator",
                phone_number=None,
                role=UserRole.admin,
                password=settings.admin_password,
            ))
            logger.info(f"Admin user '{settings.admin_username}' created.")
    except (crud.CRUDError, SQLAlchemyError) as e:
        db.rollback()
        logger.error(f"CRITICAL: Error during admin bootstrap: {e}")
    finally:
        db.close()
