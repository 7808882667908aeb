# aac_practice/routers/auth.py
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from .. import crud, schemas, security, models
from ..config import get_settings
from ..database import get_db
from ..dependencies import Services, get_services

import logging

logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/auth",
    tags=["Authentication"]
)

@router.post("/token", response_model=schemas.TokenResponse)
def login_for_access_token(
    db: Session = Depends(get_db),
    form_data: OAuth2PasswordRequestForm = Depends(),
    services: Services = Depends(get_services),
):
    user = crud.get_user_by_identifier(db, identifier=form_data.username)
    if not user or not security.verify_password(form_data.password, user.password_hash):
        logger.warning(f"Failed login attempt for username: {form_data.username}")
        services.audit.log_access("login_failed", {"username": form_data.username})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")

    user.last_login = datetime.now(timezone.utc)
    db.commit()
    services.audit.log_access("login_success", {"username": user.username}, user.id)
    logger.info(f"User '{user.username}' successfully authenticated.")

    access_token = security.create_access_token(
        data={"sub": user.username, "user_id": user.id, "role": user.role.value}
    )
    expires_in = get_settings().access_token_expire_minutes * 60
    return {"access_token": access_token, "token_type": "bearer", "expires_in": expires_in, "user": user}

@router.get("/users/me", response_model=schemas.UserResponse)
async def read_users_me(current_user: models.User = Depends(security.get_current_user)):
    """
    Get the current logged in user's details.
    """
    return current_user

@router.post("/users", response_model=schemas.UserResponse, status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(security.require_admin)])
def create_user(user: schemas.UserCreate, db: Session = Depends(get_db)):
    try:
        return crud.create_user(db, user)
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))

@router.get("/users", response_model=List[schemas.UserResponse], dependencies=[Depends(security.require_admin)])
def list_users(skip: int = 0, limit: int = 100, role: Optional[models.UserRole] = None, db: Session = Depends(get_db)):
    return crud.get_users(db, skip=skip, limit=limit, role=role)
