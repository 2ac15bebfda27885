"""FHIR R4 payload schemas.

Inbound resources are validated into a closed set of variants keyed on
``resourceType``. Only the fields the integration reads are declared; other
FHIR elements are kept as extras so the raw payload survives validation.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from nhs_interop.exceptions import MappingError


class FHIRModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class Coding(FHIRModel):
    system: str | None = None
    code: str | None = None
    display: str | None = None


class CodeableConcept(FHIRModel):
    coding: list[Coding] = Field(default_factory=list)
    text: str | None = None

    def primary(self) -> tuple[str | None, str | None]:
        """Return (code, display) from the first usable coding, falling back to text."""
        for coding in self.coding:
            code = (coding.code or "").strip() or None
            display = (coding.display or "").strip() or None
            if code or display:
                return code, display or (self.text or "").strip() or None
        return None, (self.text or "").strip() or None


class Identifier(FHIRModel):
    system: str | None = None
    value: str | None = None


class Reference(FHIRModel):
    reference: str | None = None
    identifier: Identifier | None = None
    display: str | None = None


class HumanName(FHIRModel):
    use: str | None = None
    family: str | None = None
    given: list[str] = Field(default_factory=list)


class Address(FHIRModel):
    use: str | None = None
    line: list[str] = Field(default_factory=list)
    city: str | None = None
    postal_code: str | None = None


class ContactPoint(FHIRModel):
    system: str | None = None
    value: str | None = None
    use: str | None = None


class Meta(FHIRModel):
    version_id: str | None = None
    last_updated: str | None = None


class Patient(FHIRModel):
    resource_type: Literal["Patient"]
    id: str | None = None
    meta: Meta | None = None
    identifier: list[Identifier] = Field(default_factory=list)
    name: list[HumanName] = Field(default_factory=list)
    gender: str | None = None
    birth_date: str | None = None
    deceased_boolean: bool | None = None
    deceased_date_time: str | None = None
    address: list[Address] = Field(default_factory=list)
    telecom: list[ContactPoint] = Field(default_factory=list)
    general_practitioner: list[Reference] = Field(default_factory=list)


class Dosage(FHIRModel):
    text: str | None = None


class MedicationStatement(FHIRModel):
    resource_type: Literal["MedicationStatement"]
    id: str | None = None
    status: str | None = None
    medication_codeable_concept: CodeableConcept | None = None
    subject: Reference | None = None
    dosage: list[Dosage] = Field(default_factory=list)


class MedicationRequest(FHIRModel):
    resource_type: Literal["MedicationRequest"]
    id: str | None = None
    status: str | None = None
    intent: str | None = None
    medication_codeable_concept: CodeableConcept | None = None
    subject: Reference | None = None
    authored_on: str | None = None
    dosage_instruction: list[Dosage] = Field(default_factory=list)


class AllergyIntolerance(FHIRModel):
    resource_type: Literal["AllergyIntolerance"]
    id: str | None = None
    clinical_status: CodeableConcept | None = None
    code: CodeableConcept | None = None
    criticality: str | None = None
    patient: Reference | None = None


class Condition(FHIRModel):
    resource_type: Literal["Condition"]
    id: str | None = None
    clinical_status: CodeableConcept | None = None
    code: CodeableConcept | None = None
    onset_date_time: str | None = None
    subject: Reference | None = None


class OperationOutcomeIssue(FHIRModel):
    severity: str | None = None
    code: str | None = None
    diagnostics: str | None = None


class OperationOutcome(FHIRModel):
    resource_type: Literal["OperationOutcome"]
    issue: list[OperationOutcomeIssue] = Field(default_factory=list)


FHIRResource = Annotated[
    Union[
        Patient,
        MedicationStatement,
        MedicationRequest,
        AllergyIntolerance,
        Condition,
        OperationOutcome,
    ],
    Field(discriminator="resource_type"),
]

_resource_adapter = TypeAdapter(FHIRResource)


class BundleLink(FHIRModel):
    relation: str
    url: str


class BundleEntrySearch(FHIRModel):
    mode: str | None = None


class BundleEntry(FHIRModel):
    full_url: str | None = None
    resource: dict[str, Any] | None = None
    search: BundleEntrySearch | None = None


class SearchBundle(FHIRModel):
    resource_type: Literal["Bundle"]
    type: str | None = None
    total: int | None = None
    link: list[BundleLink] = Field(default_factory=list)
    entry: list[BundleEntry] = Field(default_factory=list)

    def next_url(self) -> str | None:
        for link in self.link:
            if link.relation == "next" and link.url.strip():
                return link.url.strip()
        return None


def parse_resource(raw: Any) -> FHIRModel:
    """Validate one raw resource into its variant; unknown shapes raise MappingError."""
    try:
        return _resource_adapter.validate_python(raw)
    except ValidationError as exc:
        resource_type = raw.get("resourceType") if isinstance(raw, dict) else None
        raise MappingError(
            f"Unrecognised FHIR resource: {resource_type or type(raw).__name__}",
            resource_id=raw.get("id") if isinstance(raw, dict) else None,
            details={"errors": exc.errors(include_url=False, include_context=False)[:5]},
        ) from exc


def parse_search_bundle(raw: Any) -> SearchBundle:
    try:
        return SearchBundle.model_validate(raw)
    except ValidationError as exc:
        raise MappingError(
            "Search response is not a FHIR Bundle",
            details={"errors": exc.errors(include_url=False, include_context=False)[:5]},
        ) from exc


class FHIRResourceBundle(BaseModel):
    """Validated result of one patient fetch."""

    resource_type: str = "Patient"
    resource_id: str | None = None
    version_id: str | None = None
    raw: list[dict[str, Any]] = Field(default_factory=list)
    canonical: dict[str, Any] = Field(default_factory=dict)
    content_hash: str
