# aac_practice/routers/patients.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from .. import schemas, security, models
from ..database import get_db
from ..dependencies import Services, get_services
from ..services.hipaa_service import HIPAAError
from ..services.patient_service import PatientInUse, PatientNotFound, PatientRecordError

import logging

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Patients"],
    dependencies=[Depends(security.require_clinical)],
    responses={404: {"description": "Not found"}},
)


def _raise_for(e: Exception):
    if isinstance(e, PatientNotFound):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PatientInUse):
        raise HTTPException(status_code=409, detail=str(e))
    if isinstance(e, HIPAAError):
        logger.error(f"PHI boundary failure: {type(e).__name__}")
        raise HTTPException(status_code=500, detail="Patient record could not be processed")
    raise HTTPException(status_code=400, detail=str(e))


@router.post("/patients", status_code=status.HTTP_201_CREATED)
def create_new_patient(
    patient: schemas.PatientCreate,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
) -> Dict[str, Any]:
    """
    Create a new patient record. The whole record is stored encrypted.
    """
    try:
        return services.patients.create_patient(db, patient.model_dump(exclude_none=True), str(current_user.id))
    except (PatientRecordError, HIPAAError) as e:
        _raise_for(e)

@router.get("/patients")
def read_all_patients(
    active_only: bool = False,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
) -> List[Dict[str, Any]]:
    try:
        if search:
            return services.patients.search_patients(db, search, str(current_user.id))
        return services.patients.list_patients(db, active_only=active_only, user_id=str(current_user.id))
    except (PatientRecordError, HIPAAError) as e:
        _raise_for(e)

@router.get("/patients/{patient_id}")
def read_patient_details(
    patient_id: str,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
) -> Dict[str, Any]:
    try:
        return services.patients.get_patient(db, patient_id, str(current_user.id))
    except (PatientRecordError, HIPAAError) as e:
        _raise_for(e)

@router.put("/patients/{patient_id}")
def update_patient(
    patient_id: str,
    updates: schemas.PatientUpdate,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
) -> Dict[str, Any]:
    try:
        return services.patients.update_patient(db, patient_id, updates.model_dump(exclude_unset=True),
                                                str(current_user.id))
    except (PatientRecordError, HIPAAError) as e:
        _raise_for(e)

@router.delete("/patients/{patient_id}", status_code=status.HTTP_204_NO_CONTENT,
               dependencies=[Depends(security.require_admin)])
def delete_patient(
    patient_id: str,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
):
    try:
        services.patients.delete_patient(db, patient_id, str(current_user.id))
    except (PatientRecordError, HIPAAError) as e:
        _raise_for(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

@router.post("/patients/{patient_id}/progress", status_code=status.HTTP_201_CREATED)
def add_progress_note(
    patient_id: str,
    note: schemas.ProgressNoteCreate,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
) -> Dict[str, Any]:
    try:
        return services.patients.add_progress_note(db, patient_id, note.model_dump(exclude_none=True),
                                                   str(current_user.id))
    except (PatientRecordError, HIPAAError) as e:
        _raise_for(e)

@router.get("/patients/{patient_id}/progress")
def read_patient_progress(
    patient_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
) -> List[Dict[str, Any]]:
    try:
        return services.patients.get_patient_progress(db, patient_id, start, end, str(current_user.id))
    except (PatientRecordError, HIPAAError) as e:
        _raise_for(e)

@router.put("/patients/{patient_id}/goals")
def update_patient_goals(
    patient_id: str,
    payload: schemas.GoalsUpdate,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
) -> Dict[str, Any]:
    try:
        return services.patients.update_goals(db, patient_id, payload.goals, str(current_user.id))
    except (PatientRecordError, HIPAAError) as e:
        _raise_for(e)

@router.get("/patients/{patient_id}/export")
def export_patient(
    patient_id: str,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    current_user: models.User = Depends(security.get_current_user),
):
    """Download a sanitized copy of the record."""
    try:
        body = services.patients.export_patient_data(db, patient_id, str(current_user.id))
    except (PatientRecordError, HIPAAError) as e:
        _raise_for(e)
    return Response(
        content=body,
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{patient_id}.json"'},
    )
