# aac_practice/routers/emergency.py
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from .. import schemas, security
from ..database import get_db
from ..dependencies import Services, get_services
from ..services.emergency_service import EmergencyError, IncidentNotFound

router = APIRouter(
    prefix="/emergency",
    tags=["Emergency"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)


def _raise_for(e: EmergencyError):
    if isinstance(e, IncidentNotFound):
        raise HTTPException(status_code=404, detail=str(e))
    raise HTTPException(status_code=400, detail=str(e))


@router.post("/users/{user_id}/contacts", response_model=schemas.EmergencyContactResponse,
             status_code=status.HTTP_201_CREATED)
def add_emergency_contact(
    user_id: str,
    contact: schemas.EmergencyContactCreate,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    try:
        return services.emergency.add_contact(db, user_id, contact.model_dump())
    except EmergencyError as e:
        _raise_for(e)

@router.get("/users/{user_id}/contacts", response_model=List[schemas.EmergencyContactResponse])
def read_emergency_contacts(user_id: str, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    return services.emergency.list_contacts(db, user_id)

@router.delete("/users/{user_id}/contacts/{contact_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_emergency_contact(
    user_id: str,
    contact_id: int,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    try:
        services.emergency.remove_contact(db, user_id, contact_id)
    except EmergencyError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return Response(status_code=status.HTTP_204_NO_CONTENT)

@router.post("/users/{user_id}/activate", response_model=schemas.EmergencyIncidentResponse,
             status_code=status.HTTP_201_CREATED)
def activate_emergency(
    user_id: str,
    request: schemas.EmergencyActivate,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """
    Open an incident and notify contacts according to severity.
    """
    location = request.location.model_dump() if request.location else None
    try:
        return services.emergency.activate_emergency(db, user_id, request.emergency_type, request.severity, location)
    except EmergencyError as e:
        _raise_for(e)

@router.get("/users/{user_id}/active", response_model=Optional[schemas.EmergencyIncidentResponse])
def read_active_incident(user_id: str, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    return services.emergency.get_active_incident(db, user_id)

@router.get("/incidents/{incident_id}", response_model=schemas.EmergencyIncidentResponse)
def read_incident(incident_id: int, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    try:
        return services.emergency.get_incident(db, incident_id)
    except EmergencyError as e:
        _raise_for(e)

@router.post("/incidents/{incident_id}/update", response_model=schemas.EmergencyIncidentResponse)
def send_incident_update(
    incident_id: int,
    request: schemas.EmergencyUpdate,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    try:
        return services.emergency.send_update(db, incident_id, request.message)
    except EmergencyError as e:
        _raise_for(e)

@router.post("/incidents/{incident_id}/resolve", response_model=schemas.EmergencyIncidentResponse)
def resolve_incident(
    incident_id: int,
    request: schemas.EmergencyResolve,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    try:
        return services.emergency.resolve_emergency(db, incident_id, request.false_alarm)
    except EmergencyError as e:
        _raise_for(e)
