"""Domain models: canonical persons, provider identities and snapshots,
overrides, parent edges, operations and progress events."""
from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field
from uuid_utils import uuid7 as _uuid7


def new_canonical_id() -> str:
    """Sortable canonical person identifier (UUIDv7)."""
    return str(_uuid7())


def utcnow() -> datetime:
    return datetime.now(UTC)


class Provider(str, Enum):
    """External genealogy providers with a scraper implementation."""

    FAMILYSEARCH = "familysearch"
    ANCESTRY = "ancestry"
    WIKITREE = "wikitree"
    TWENTYTHREEANDME = "23andme"


# Lookup order used when an external ID arrives without a source
PROVIDER_RESOLUTION_ORDER: tuple[Provider, ...] = (
    Provider.FAMILYSEARCH,
    Provider.ANCESTRY,
    Provider.WIKITREE,
    Provider.TWENTYTHREEANDME,
)


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    UNKNOWN = "unknown"


class ParentRole(str, Enum):
    FATHER = "father"
    MOTHER = "mother"
    PARENT = "parent"


# =============================================================================
# Persons and identities
# =============================================================================


class VitalEvent(BaseModel):
    date: str | None = None
    place: str | None = None

    def is_empty(self) -> bool:
        return not (self.date or self.place)


class CanonicalPerson(BaseModel):
    """Aggregate root: one real person across every provider."""

    person_id: str = Field(default_factory=new_canonical_id)
    display_name: str = ""
    gender: Gender = Gender.UNKNOWN
    living: bool = False
    birth: VitalEvent = Field(default_factory=VitalEvent)
    death: VitalEvent = Field(default_factory=VitalEvent)
    alternate_names: list[str] = Field(default_factory=list)
    occupations: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ExternalIdentity(BaseModel):
    source: Provider
    external_id: str
    person_id: str
    url: str | None = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    last_seen_at: datetime = Field(default_factory=utcnow)


class ParentEdge(BaseModel):
    child_id: str
    parent_id: str
    parent_role: ParentRole = ParentRole.PARENT
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    source: str | None = None


# =============================================================================
# Provider data
# =============================================================================


class ParentRefs(BaseModel):
    """Parent identifiers found on a provider person page.

    ``role_source`` is ``"tagged"`` when the provider marked father/mother
    explicitly and ``"order"`` when roles were guessed from link order.
    """

    father_id: str | None = None
    mother_id: str | None = None
    father_name: str | None = None
    mother_name: str | None = None
    role_source: str = "tagged"

    @property
    def by_role(self) -> dict[ParentRole, tuple[str | None, str | None]]:
        return {
            ParentRole.FATHER: (self.father_id, self.father_name),
            ParentRole.MOTHER: (self.mother_id, self.mother_name),
        }


class ScrapedRecord(BaseModel):
    """Provider-attributed snapshot of one person."""

    external_id: str
    provider: Provider
    name: str = ""
    gender: Gender | None = None
    birth: VitalEvent | None = None
    death: VitalEvent | None = None
    alternate_names: list[str] = Field(default_factory=list)
    occupations: list[str] = Field(default_factory=list)
    father_external_id: str | None = None
    mother_external_id: str | None = None
    father_name: str | None = None
    mother_name: str | None = None
    spouse_external_ids: list[str] = Field(default_factory=list)
    children_count: int | None = None
    photo_url: str | None = None
    source_url: str | None = None
    parent_role_source: str = "tagged"
    scraped_at: datetime = Field(default_factory=utcnow)

    def parent_refs(self) -> ParentRefs:
        return ParentRefs(
            father_id=self.father_external_id,
            mother_id=self.mother_external_id,
            father_name=self.father_name,
            mother_name=self.mother_name,
            role_source=self.parent_role_source,
        )

    def baseline_attrs(self) -> dict[str, Any]:
        """Attributes used to seed a new canonical person."""
        return {
            "display_name": self.name,
            "gender": self.gender or Gender.UNKNOWN,
            "birth": self.birth or VitalEvent(),
            "death": self.death or VitalEvent(),
            "alternate_names": list(self.alternate_names),
            "occupations": list(self.occupations),
        }


class ProviderTreeInfo(BaseModel):
    provider: Provider
    tree_id: str
    tree_name: str
    person_count: int | None = None
    root_person_id: str | None = None


class LocalOverride(BaseModel):
    """User-asserted value shadowing baseline and provider data."""

    override_id: str = Field(default_factory=new_canonical_id)
    entity_type: str
    entity_id: str
    field_name: str
    original_value: str | None = None
    override_value: str | None = None
    reason: str | None = None
    source: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Operations and progress
# =============================================================================


class OperationKind(str, Enum):
    ANCESTOR_CRAWL = "ancestor-crawl"
    HINT_PROCESSING = "hint-processing"


class OperationState(str, Enum):
    IDLE = "idle"
    STARTED = "started"
    RUNNING = "running"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationState.COMPLETED, OperationState.CANCELLED, OperationState.ERROR)


class ProgressCounters(BaseModel):
    current: int = 0
    total: int = 0
    processed: int = 0
    skipped: int = 0
    errors: int = 0


class Operation(BaseModel):
    operation_id: str
    kind: OperationKind
    state: OperationState = OperationState.IDLE
    counters: ProgressCounters = Field(default_factory=ProgressCounters)
    message: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None


class ProgressEventType(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    PERSON_STARTED = "person_started"
    PERSON_COMPLETE = "person_complete"
    PERSON_SKIPPED = "person_skipped"
    HINT_PROCESSED = "hint_processed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ProgressEventType.COMPLETED,
            ProgressEventType.CANCELLED,
            ProgressEventType.ERROR,
        )


class ProgressEvent(BaseModel):
    """One structured progress record, shaped for push transports."""

    type: ProgressEventType
    operation_id: str
    current: int = 0
    total: int = 0
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    message: str = ""
    person_id: str | None = None
    reauth_required: bool = False
    emitted_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Reconciliation
# =============================================================================


class ComparisonStatus(str, Enum):
    MATCH = "match"
    DIFFERENT = "different"
    MISSING_LOCAL = "missing_local"
    MISSING_PROVIDER = "missing_provider"


class ProviderValue(BaseModel):
    provider: Provider
    value: Any = None
    status: ComparisonStatus
    external_id: str | None = None
    url: str | None = None
    scraped_at: datetime | None = None


class FieldComparison(BaseModel):
    field_name: str
    label: str
    local_value: Any = None
    baseline_value: Any = None
    override_value: Any = None
    has_override: bool = False
    providers: dict[Provider, ProviderValue] = Field(default_factory=dict)


class ComparisonSummary(BaseModel):
    total_fields: int = 0
    matching_fields: int = 0
    differing_fields: int = 0
    missing_on_providers: dict[Provider, int] = Field(default_factory=dict)


class PersonComparison(BaseModel):
    person_id: str
    display_name: str
    providers: list[Provider] = Field(default_factory=list)
    fields: list[FieldComparison] = Field(default_factory=list)
    summary: ComparisonSummary = Field(default_factory=ComparisonSummary)
    generated_at: datetime = Field(default_factory=utcnow)

    def get_field(self, name: str) -> FieldComparison:
        for item in self.fields:
            if item.field_name == name:
                return item
        raise KeyError(name)
