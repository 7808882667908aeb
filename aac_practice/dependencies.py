# aac_practice/dependencies.py
import logging
import random
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request
from sqlalchemy.orm import Session

from .compliance_logger import ComplianceLogger
from .config import Settings
from .database import SessionLocal
from .security import EncryptionService
from .services.billing_service import BillingService
from .services.emergency_service import EmergencyService
from .services.hipaa_service import HIPAAService
from .services.notification_service import NotificationService
from .services.patient_service import PatientService
from .services.scheduling_service import SchedulingService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Service container built once at startup and shared by every request"""
    settings: Settings
    audit: ComplianceLogger
    encryption: EncryptionService
    hipaa: HIPAAService
    notifier: NotificationService
    billing: BillingService
    patients: PatientService
    scheduling: SchedulingService
    emergency: EmergencyService


def build_services(
    settings: Settings,
    session_factory: Optional[Callable[[], Session]] = None,
    rng: Optional[random.Random] = None,
    notifier: Optional[NotificationService] = None,
) -> Services:
    audit = ComplianceLogger(
        session_factory=session_factory or SessionLocal,
        buffer_size=settings.audit_buffer_size,
        persist_limit=settings.audit_persist_limit,
    )
    encryption = EncryptionService.from_settings(settings)
    hipaa = HIPAAService(encryption, audit, settings)
    notifier = notifier or NotificationService(settings)
    billing = BillingService(audit, settings, rng=rng)
    patients = PatientService(hipaa)
    scheduling = SchedulingService(billing, patients, notifier, audit, settings)
    emergency = EmergencyService(notifier, audit)
    logger.info("Service container built")
    return Services(
        settings=settings,
        audit=audit,
        encryption=encryption,
        hipaa=hipaa,
        notifier=notifier,
        billing=billing,
        patients=patients,
        scheduling=scheduling,
        emergency=emergency,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
