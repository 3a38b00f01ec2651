"""Field-level reconciliation of canonical, provider and user-asserted data.

Three layers feed every displayed value, highest precedence first:

1. LocalOverride rows (explicit user choices, never touched by re-sync)
2. The canonical baseline on the person (and its parent edges)
3. The most recent provider snapshot

Raw snapshots stay stored after an override so a choice can be diffed or
reverted later.
"""
from __future__ import annotations

import json
import re
import unicodedata
from dataclasses import dataclass
from typing import Any

import structlog

from .identity import IdentityResolver
from .models import (
    PROVIDER_RESOLUTION_ORDER,
    CanonicalPerson,
    ComparisonStatus,
    ComparisonSummary,
    FieldComparison,
    Gender,
    LocalOverride,
    ParentEdge,
    ParentRole,
    PersonComparison,
    Provider,
    ProviderValue,
    ScrapedRecord,
    utcnow,
)
from .store import SyncStore

logger = structlog.get_logger(__name__)

PERSON_ENTITY = "person"

ROLE_MATCH_SCORE = 0.7
NAME_MATCH_BONUS = 0.3

_WS = re.compile(r"\s+")


@dataclass(frozen=True)
class TrackedField:
    name: str
    label: str
    is_list: bool = False
    parent_role: ParentRole | None = None

    @property
    def is_relationship(self) -> bool:
        return self.parent_role is not None


TRACKED_FIELDS: tuple[TrackedField, ...] = (
    TrackedField("name", "Name"),
    TrackedField("gender", "Gender"),
    TrackedField("birth_date", "Birth Date"),
    TrackedField("birth_place", "Birth Place"),
    TrackedField("death_date", "Death Date"),
    TrackedField("death_place", "Death Place"),
    TrackedField("alternate_names", "Alternate Names", is_list=True),
    TrackedField("father_name", "Father", parent_role=ParentRole.FATHER),
    TrackedField("mother_name", "Mother", parent_role=ParentRole.MOTHER),
    TrackedField("children_count", "Children"),
    TrackedField("occupations", "Occupations", is_list=True),
)
FIELDS_BY_NAME = {f.name: f for f in TRACKED_FIELDS}


# =============================================================================
# Normalization and scoring
# =============================================================================


def normalize(value: Any) -> str:
    """Trim, collapse whitespace and case-fold a scalar for comparison."""
    if value is None:
        return ""
    if isinstance(value, Gender):
        value = "" if value is Gender.UNKNOWN else value.value
    return _WS.sub(" ", str(value)).strip().casefold()


def normalize_name(name: str | None) -> str:
    """Like :func:`normalize`, also stripping accents (``José`` == ``jose``)."""
    decomposed = unicodedata.normalize("NFD", normalize(name))
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def names_match(a: str | None, b: str | None) -> bool:
    left, right = normalize_name(a), normalize_name(b)
    return bool(left) and left == right


def score_candidate(expected_name: str | None, candidate_name: str | None, role_match: bool = True) -> float:
    """Confidence that a provider candidate is the expected relative.

    0.7 for a structural role match, +0.3 when the normalized names agree,
    capped at 1.0.
    """
    score = ROLE_MATCH_SCORE if role_match else 0.0
    if names_match(expected_name, candidate_name):
        score += NAME_MATCH_BONUS
    return round(min(score, 1.0), 4)


def _is_empty(value: Any) -> bool:
    if isinstance(value, (list, tuple, set)):
        return not any(normalize(v) for v in value)
    return normalize(value) == ""


def _comparable(value: Any, is_list: bool) -> Any:
    if is_list:
        return frozenset(normalize(v) for v in value or () if normalize(v))
    return normalize(value)


def classify(baseline: Any, provider_value: Any, is_list: bool = False) -> ComparisonStatus:
    """Compare one provider value against the baseline."""
    if _is_empty(provider_value):
        return ComparisonStatus.MISSING_PROVIDER
    if _is_empty(baseline):
        return ComparisonStatus.MISSING_LOCAL
    if _comparable(baseline, is_list) == _comparable(provider_value, is_list):
        return ComparisonStatus.MATCH
    return ComparisonStatus.DIFFERENT


# -- value encoding for override rows ---------------------------------------


def encode_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return json.dumps(list(value))
    if isinstance(value, Gender):
        return value.value
    return str(value)


def decode_value(field: TrackedField, text: str | None) -> Any:
    if text is None:
        return None
    if field.is_list:
        return json.loads(text)
    if field.name == "children_count":
        return int(text)
    return text


def record_value(record: ScrapedRecord, field_name: str) -> Any:
    """Value of a tracked field in a provider snapshot."""
    if field_name == "name":
        return record.name or None
    if field_name == "gender":
        return None if record.gender in (None, Gender.UNKNOWN) else record.gender.value
    if field_name in ("birth_date", "birth_place", "death_date", "death_place"):
        event_name, attr = field_name.split("_")
        event = getattr(record, event_name)
        return getattr(event, attr) if event is not None else None
    if field_name == "alternate_names":
        return list(record.alternate_names)
    if field_name == "occupations":
        return list(record.occupations)
    if field_name == "father_name":
        return record.father_name
    if field_name == "mother_name":
        return record.mother_name
    if field_name == "children_count":
        return record.children_count
    raise KeyError(field_name)


# =============================================================================
# Engine
# =============================================================================


class ReconciliationEngine:
    """Comparison queries and "use this value" actions for canonical persons."""

    def __init__(self, store: SyncStore, resolver: IdentityResolver | None = None) -> None:
        self.store = store
        self.resolver = resolver or IdentityResolver(store)

    # -- reading --------------------------------------------------------

    def _person(self, person_id: str) -> CanonicalPerson:
        person = self.store.get_person(person_id)
        if person is None:
            raise KeyError(person_id)
        return person

    def baseline_value(self, person: CanonicalPerson, field_name: str) -> Any:
        field = FIELDS_BY_NAME[field_name]
        if field.is_relationship:
            parent = self.store.parent_by_role(person.person_id, field.parent_role)
            return parent.display_name if parent else None
        if field_name == "name":
            return person.display_name or None
        if field_name == "gender":
            return None if person.gender is Gender.UNKNOWN else person.gender.value
        if field_name in ("birth_date", "birth_place", "death_date", "death_place"):
            event_name, attr = field_name.split("_")
            return getattr(getattr(person, event_name), attr)
        if field_name == "alternate_names":
            return list(person.alternate_names)
        if field_name == "occupations":
            return list(person.occupations)
        if field_name == "children_count":
            return self.store.count_children(person.person_id) or None
        raise KeyError(field_name)

    def effective_value(self, person_id: str, field_name: str) -> Any:
        """Value to display: override, else baseline, else the first provider snapshot with data."""
        field = FIELDS_BY_NAME[field_name]
        override = self.store.get_override(PERSON_ENTITY, person_id, field_name)
        if override is not None:
            return decode_value(field, override.override_value)

        baseline = self.baseline_value(self._person(person_id), field_name)
        if not _is_empty(baseline):
            return baseline

        snapshots = self.store.latest_snapshots(person_id)
        for provider in PROVIDER_RESOLUTION_ORDER:
            if provider in snapshots:
                value = record_value(snapshots[provider], field_name)
                if not _is_empty(value):
                    return value
        return None

    def get_field_comparison(self, person_id: str) -> PersonComparison:
        """Compare every tracked field against each provider's latest snapshot.

        Raises:
            KeyError: unknown person.
        """
        person = self._person(person_id)
        snapshots = self.store.latest_snapshots(person_id)
        identities = {i.source: i for i in self.store.identities_for_person(person_id)}
        overrides = {o.field_name: o for o in self.store.overrides_for_entity(PERSON_ENTITY, person_id)}
        providers = [p for p in PROVIDER_RESOLUTION_ORDER if p in snapshots]

        summary = ComparisonSummary(
            total_fields=len(TRACKED_FIELDS),
            missing_on_providers={p: 0 for p in providers},
        )
        fields: list[FieldComparison] = []
        for field in TRACKED_FIELDS:
            baseline = self.baseline_value(person, field.name)
            override = overrides.get(field.name)
            override_value = decode_value(field, override.override_value) if override else None

            values: dict[Provider, ProviderValue] = {}
            for provider in providers:
                record = snapshots[provider]
                value = record_value(record, field.name)
                status = classify(baseline, value, field.is_list)
                identity = identities.get(provider)
                values[provider] = ProviderValue(
                    provider=provider,
                    value=value,
                    status=status,
                    external_id=identity.external_id if identity else record.external_id,
                    url=(identity.url if identity else None) or record.source_url,
                    scraped_at=record.scraped_at,
                )
                if status is ComparisonStatus.MISSING_PROVIDER:
                    summary.missing_on_providers[provider] += 1

            statuses = {v.status for v in values.values()}
            if ComparisonStatus.DIFFERENT in statuses:
                summary.differing_fields += 1
            elif ComparisonStatus.MATCH in statuses:
                summary.matching_fields += 1

            fields.append(
                FieldComparison(
                    field_name=field.name,
                    label=field.label,
                    local_value=override_value if override else baseline,
                    baseline_value=baseline,
                    override_value=override_value,
                    has_override=override is not None,
                    providers=values,
                )
            )

        return PersonComparison(
            person_id=person_id,
            display_name=person.display_name,
            providers=providers,
            fields=fields,
            summary=summary,
        )

    # -- writing --------------------------------------------------------

    def apply_provider_value(
        self,
        person_id: str,
        field_name: str,
        provider: Provider | str,
        value: Any = None,
        *,
        reason: str | None = None,
    ) -> LocalOverride | ParentEdge:
        """Accept a provider's value for one field.

        Scalar and list fields become a single LocalOverride whose
        ``original_value`` is the baseline at first application. Father and
        mother fields link the provider's parent as a canonical person through
        a parent edge instead; no override row is written for them.

        ``value`` defaults to the provider's latest snapshot value.

        Raises:
            KeyError: unknown person or field.
            ValueError: the provider has no data for the field.
        """
        provider = Provider(provider)
        if field_name not in FIELDS_BY_NAME:
            raise KeyError(field_name)
        field = FIELDS_BY_NAME[field_name]
        person = self._person(person_id)
        record = self.store.latest_snapshots(person_id).get(provider)

        if value is None and record is not None:
            value = record_value(record, field_name)
        if _is_empty(value):
            raise ValueError(f"{provider.value} has no value for {field_name}")

        if field.is_relationship:
            return self._link_parent(person, field, provider, record, value)

        override = self.store.upsert_override(
            LocalOverride(
                entity_type=PERSON_ENTITY,
                entity_id=person_id,
                field_name=field_name,
                original_value=encode_value(self.baseline_value(person, field_name)),
                override_value=encode_value(value),
                reason=reason,
                source=provider.value,
                updated_at=utcnow(),
            )
        )
        logger.info(
            "reconcile.override_applied",
            person_id=person_id,
            field=field_name,
            provider=provider.value,
        )
        return override

    def _link_parent(
        self,
        person: CanonicalPerson,
        field: TrackedField,
        provider: Provider,
        record: ScrapedRecord | None,
        parent_name: str,
    ) -> ParentEdge:
        role = field.parent_role
        if record is None:
            raise ValueError(f"no {provider.value} snapshot for {person.person_id}")
        parent_external_id = record.father_external_id if role is ParentRole.FATHER else record.mother_external_id
        if not parent_external_id:
            raise ValueError(f"{provider.value} snapshot has no {role.value} ID for {person.person_id}")

        gender = Gender.MALE if role is ParentRole.FATHER else Gender.FEMALE
        parent_id = self.resolver.get_or_create_canonical_id(
            provider, parent_external_id, parent_name, {"gender": gender}
        )
        edge = ParentEdge(
            child_id=person.person_id,
            parent_id=parent_id,
            parent_role=role,
            confidence=1.0,
            source=provider.value,
        )
        created = self.store.add_parent_edge(edge)
        logger.info(
            "reconcile.parent_linked",
            person_id=person.person_id,
            parent_id=parent_id,
            role=role.value,
            created=created,
        )
        return edge

    def revert_override(self, person_id: str, field_name: str) -> bool:
        """Drop the override so the baseline shows again."""
        removed = self.store.delete_override(PERSON_ENTITY, person_id, field_name)
        if removed:
            logger.info("reconcile.override_reverted", person_id=person_id, field=field_name)
        return removed

    def list_overrides(self, person_id: str) -> list[LocalOverride]:
        return self.store.overrides_for_entity(PERSON_ENTITY, person_id)
