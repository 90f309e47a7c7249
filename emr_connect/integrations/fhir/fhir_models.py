"""
FHIR R4 Resource Helpers

Resources travel as plain JSON dicts. This module carries the resource
type names, Bundle unwrapping and OperationOutcome interpretation.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

# ==============================================================================
# Enums
# ==============================================================================


class FHIRResourceType(str, Enum):
    """FHIR resource types used by the patient views"""

    PATIENT = "Patient"
    MEDICATION_REQUEST = "MedicationRequest"
    OBSERVATION = "Observation"
    DIAGNOSTIC_REPORT = "DiagnosticReport"
    APPOINTMENT = "Appointment"
    ENCOUNTER = "Encounter"
    PROCEDURE = "Procedure"
    CONDITION = "Condition"
    ALLERGY_INTOLERANCE = "AllergyIntolerance"
    IMMUNIZATION = "Immunization"


ResourceTypeLike = Union[FHIRResourceType, str]


def resource_type_name(resource_type: ResourceTypeLike) -> str:
    """Plain type name for an enum member or string"""
    if isinstance(resource_type, FHIRResourceType):
        return resource_type.value
    return str(resource_type)


# ==============================================================================
# Bundle
# ==============================================================================


@dataclass
class FHIRBundle:
    """Search result bundle"""

    type: str = "searchset"
    total: Optional[int] = None
    entries: List[Dict[str, Any]] = field(default_factory=list)
    links: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FHIRBundle":
        return cls(
            type=data.get("type", "searchset"),
            total=data.get("total"),
            entries=data.get("entry") or [],
            links=data.get("link") or [],
        )

    @staticmethod
    def is_bundle(data: Any) -> bool:
        return isinstance(data, dict) and data.get("resourceType") == "Bundle"

    def resources(self, resource_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Unwrap entry resources.

        With resource_type set, entries of any other type (e.g. the
        OperationOutcome some servers append to search results) are dropped.
        """
        resources = []
        for entry in self.entries:
            resource = entry.get("resource") if isinstance(entry, dict) else None
            if not isinstance(resource, dict):
                continue
            if resource_type and resource.get("resourceType") != resource_type:
                continue
            resources.append(resource)
        return resources

    @property
    def next_link(self) -> Optional[str]:
        for link in self.links:
            if link.get("relation") == "next":
                return link.get("url")
        return None


# ==============================================================================
# OperationOutcome
# ==============================================================================


def parse_operation_outcome(data: Any) -> Optional[str]:
    """First issue's diagnostics, falling back to its details text"""
    if not isinstance(data, dict) or data.get("resourceType") != "OperationOutcome":
        return None

    issues = data.get("issue") or []
    if not issues or not isinstance(issues[0], dict):
        return None

    issue = issues[0]
    details = issue.get("details") or {}
    return issue.get("diagnostics") or details.get("text")


__all__ = [
    "FHIRResourceType",
    "ResourceTypeLike",
    "resource_type_name",
    "FHIRBundle",
    "parse_operation_outcome",
]
