"""
Patient Data Service

Fetches the patient-facing views (demographics, medications, vitals,
labs, appointments, encounters, procedures) through a FHIRClient and
aggregates them with per-collection failure isolation.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from emr_connect.core.logging import get_logger

from .fhir_client import FHIRClient, SearchParams
from .fhir_models import FHIRResourceType

logger = get_logger(__name__)


class PatientDataStatus(str, Enum):
    """Outcome of an aggregate fetch"""

    LOADED = "loaded"
    PARTIAL = "partial"
    ERROR = "error"


@dataclass
class PatientDataResult:
    """All patient views from one aggregate fetch"""

    patient: Optional[Dict[str, Any]] = None
    medications: List[Dict[str, Any]] = field(default_factory=list)
    vitals: List[Dict[str, Any]] = field(default_factory=list)
    lab_reports: List[Dict[str, Any]] = field(default_factory=list)
    appointments: List[Dict[str, Any]] = field(default_factory=list)
    encounters: List[Dict[str, Any]] = field(default_factory=list)
    procedures: List[Dict[str, Any]] = field(default_factory=list)

    # Keyed by "patient", "medications", "vitals", "labReports",
    # "appointments", "encounters", "procedures"
    errors: Dict[str, str] = field(default_factory=dict)

    status: PatientDataStatus = PatientDataStatus.LOADED
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "patient": self.patient,
            "medications": self.medications,
            "vitals": self.vitals,
            "labReports": self.lab_reports,
            "appointments": self.appointments,
            "encounters": self.encounters,
            "procedures": self.procedures,
            "errors": dict(self.errors),
            "status": self.status.value,
            "fetchedAt": self.fetched_at.isoformat(),
        }


# Error key -> result attribute
RESULT_FIELDS = {
    "patient": "patient",
    "medications": "medications",
    "vitals": "vitals",
    "labReports": "lab_reports",
    "appointments": "appointments",
    "encounters": "encounters",
    "procedures": "procedures",
}


class PatientService:
    """
    Patient data views over one provider.

    Usage:
        service = PatientService(fhir_client)
        result = await service.get_all_patient_data(patient_id)
        if result.errors:
            ...  # render what loaded, flag what did not
    """

    def __init__(self, client: FHIRClient):
        self.client = client

    async def _search(
        self,
        resource_type: FHIRResourceType,
        patient_id: str,
        defaults: SearchParams,
        extra_params: Optional[SearchParams],
    ) -> List[Dict[str, Any]]:
        if not self.client.is_resource_type_supported(resource_type):
            logger.debug(
                "resource_type_not_supported",
                provider_id=self.client.provider_id,
                resource_type=resource_type.value,
            )
            return []

        params = dict(defaults)
        if extra_params:
            params.update(extra_params)
        return await self.client.search_by_patient(resource_type, patient_id, params)

    # =========================================================================
    # Single Views
    # =========================================================================

    async def get_patient(self, patient_id: str) -> Optional[Dict[str, Any]]:
        return await self.client.read(FHIRResourceType.PATIENT, patient_id)

    async def get_medications(
        self, patient_id: str, extra_params: Optional[SearchParams] = None
    ) -> List[Dict[str, Any]]:
        return await self._search(
            FHIRResourceType.MEDICATION_REQUEST,
            patient_id,
            {"status": "active"},
            extra_params,
        )

    async def get_vitals(self, patient_id: str, extra_params: Optional[SearchParams] = None) -> List[Dict[str, Any]]:
        return await self._search(
            FHIRResourceType.OBSERVATION,
            patient_id,
            {"category": "vital-signs", "_sort": "-date"},
            extra_params,
        )

    async def get_lab_reports(
        self, patient_id: str, extra_params: Optional[SearchParams] = None
    ) -> List[Dict[str, Any]]:
        return await self._search(
            FHIRResourceType.OBSERVATION,
            patient_id,
            {"category": "laboratory", "_sort": "-date"},
            extra_params,
        )

    async def get_appointments(
        self, patient_id: str, extra_params: Optional[SearchParams] = None
    ) -> List[Dict[str, Any]]:
        return await self._search(
            FHIRResourceType.APPOINTMENT,
            patient_id,
            {"status": "booked"},
            extra_params,
        )

    async def get_encounters(
        self, patient_id: str, extra_params: Optional[SearchParams] = None
    ) -> List[Dict[str, Any]]:
        return await self._search(FHIRResourceType.ENCOUNTER, patient_id, {}, extra_params)

    async def get_procedures(
        self, patient_id: str, extra_params: Optional[SearchParams] = None
    ) -> List[Dict[str, Any]]:
        return await self._search(FHIRResourceType.PROCEDURE, patient_id, {}, extra_params)

    # =========================================================================
    # Aggregate
    # =========================================================================

    async def get_all_patient_data(self, patient_id: str) -> PatientDataResult:
        """
        Fetch every view concurrently.

        A failing view leaves its empty default in place and records a
        message under its key in errors; the others are unaffected.
        """
        fetches = {
            "patient": self.get_patient(patient_id),
            "medications": self.get_medications(patient_id),
            "vitals": self.get_vitals(patient_id),
            "labReports": self.get_lab_reports(patient_id),
            "appointments": self.get_appointments(patient_id),
            "encounters": self.get_encounters(patient_id),
            "procedures": self.get_procedures(patient_id),
        }

        results = await asyncio.gather(*fetches.values(), return_exceptions=True)

        result = PatientDataResult()
        for key, outcome in zip(fetches.keys(), results):
            if isinstance(outcome, BaseException):
                result.errors[key] = str(outcome) or type(outcome).__name__
                logger.warning(
                    "patient_data_fetch_failed",
                    provider_id=self.client.provider_id,
                    view=key,
                    error_type=type(outcome).__name__,
                )
                continue
            if outcome is not None:
                setattr(result, RESULT_FIELDS[key], outcome)

        if not result.errors:
            result.status = PatientDataStatus.LOADED
        elif len(result.errors) == len(fetches):
            result.status = PatientDataStatus.ERROR
        else:
            result.status = PatientDataStatus.PARTIAL

        logger.info(
            "patient_data_fetched",
            provider_id=self.client.provider_id,
            status=result.status.value,
            failed_views=sorted(result.errors),
        )
        return result


__all__ = [
    "PatientDataStatus",
    "PatientDataResult",
    "PatientService",
]
