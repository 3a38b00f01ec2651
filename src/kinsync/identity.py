"""Canonical identity assignment across providers.

Every real person gets one canonical ID (UUIDv7). Provider identities
``(source, external_id)`` point at it; the pair is unique, and a canonical
person holds at most one identity per source.
"""
from __future__ import annotations

from collections import OrderedDict
from typing import Any

import structlog

from .errors import ConflictError
from .models import (
    PROVIDER_RESOLUTION_ORDER,
    CanonicalPerson,
    ExternalIdentity,
    Provider,
    utcnow,
)
from .store import SyncStore

logger = structlog.get_logger(__name__)


class _IdentityCache:
    """Bounded LRU of (source, external_id) -> canonical ID."""

    def __init__(self, max_size: int = 1024) -> None:
        self.max_size = max_size
        self._data: OrderedDict[tuple[str, str], str] = OrderedDict()

    def get(self, source: Provider, external_id: str) -> str | None:
        key = (source.value, external_id)
        value = self._data.get(key)
        if value is not None:
            self._data.move_to_end(key)
        return value

    def put(self, source: Provider, external_id: str, person_id: str) -> None:
        key = (source.value, external_id)
        self._data[key] = person_id
        self._data.move_to_end(key)
        while len(self._data) > self.max_size:
            self._data.popitem(last=False)

    def discard(self, source: Provider, external_id: str) -> None:
        self._data.pop((source.value, external_id), None)

    def discard_person(self, person_id: str) -> None:
        for key in [k for k, v in self._data.items() if v == person_id]:
            del self._data[key]

    def clear(self) -> None:
        self._data.clear()


class IdentityResolver:
    """Resolve and register provider identities against canonical persons."""

    def __init__(self, store: SyncStore, cache_size: int = 1024) -> None:
        self.store = store
        self._cache = _IdentityCache(cache_size)

    def get_or_create_canonical_id(
        self,
        source: Provider | str,
        external_id: str,
        display_name: str = "",
        attrs: dict[str, Any] | None = None,
    ) -> str:
        """Return the canonical ID bound to (source, external_id), creating it if unseen.

        Safe under concurrent calls for the same key: the identity row is
        claimed with insert-if-absent and the losing writer adopts the winner.
        """
        source = Provider(source)
        cached = self._cache.get(source, external_id)
        if cached is not None:
            if self.store.touch_identity(source, external_id):
                return cached
            # Row went away underneath the cache
            self._cache.discard(source, external_id)

        attrs = dict(attrs or {})
        url = attrs.pop("url", None)
        confidence = attrs.pop("confidence", 1.0)
        candidate = CanonicalPerson(display_name=display_name, **attrs)
        person_id, created = self.store.claim_identity(
            source, external_id, candidate, url=url, confidence=confidence
        )
        if created:
            logger.info(
                "identity.created",
                source=source.value,
                external_id=external_id,
                person_id=person_id,
            )
        else:
            logger.debug("identity.reuse", source=source.value, external_id=external_id, person_id=person_id)
        self._cache.put(source, external_id, person_id)
        return person_id

    def resolve_id(self, id: str, assumed_source: Provider | str | None = None) -> str | None:
        """Accept a canonical ID or an external ID and return the canonical ID.

        With no ``assumed_source`` every provider is tried in resolution order.
        """
        if self.store.person_exists(id):
            return id

        sources = (Provider(assumed_source),) if assumed_source else PROVIDER_RESOLUTION_ORDER
        for source in sources:
            person_id = self._lookup(source, id)
            if person_id is not None:
                return person_id
        return None

    def _lookup(self, source: Provider, external_id: str) -> str | None:
        cached = self._cache.get(source, external_id)
        if cached is not None:
            return cached
        identity = self.store.get_identity(source, external_id)
        if identity is None:
            return None
        self._cache.put(source, external_id, identity.person_id)
        return identity.person_id

    def register_external_id(
        self,
        canonical_id: str,
        source: Provider | str,
        external_id: str,
        meta: dict[str, Any] | None = None,
    ) -> ExternalIdentity:
        """Link an extra provider identity to an existing canonical person.

        Raises:
            ConflictError: the identity belongs to a different person, or this
                person already has a different identity on ``source``.
            KeyError: ``canonical_id`` does not exist.
        """
        source = Provider(source)
        meta = meta or {}
        if not self.store.person_exists(canonical_id):
            raise KeyError(canonical_id)

        existing_for_source = self.store.identity_for_person(canonical_id, source)
        if existing_for_source is not None and existing_for_source.external_id != external_id:
            raise ConflictError(
                source=source.value,
                external_id=external_id,
                existing_canonical_id=canonical_id,
                requested_canonical_id=canonical_id,
                existing_external_id=existing_for_source.external_id,
            )

        stored = self.store.insert_identity_if_absent(
            ExternalIdentity(
                source=source,
                external_id=external_id,
                person_id=canonical_id,
                url=meta.get("url"),
                confidence=meta.get("confidence", 1.0),
                last_seen_at=utcnow(),
            )
        )
        if stored.person_id != canonical_id:
            logger.warning(
                "identity.conflict",
                source=source.value,
                external_id=external_id,
                existing=stored.person_id,
                requested=canonical_id,
            )
            raise ConflictError(
                source=source.value,
                external_id=external_id,
                existing_canonical_id=stored.person_id,
                requested_canonical_id=canonical_id,
            )

        self.store.touch_identity(
            source, external_id, url=meta.get("url"), confidence=meta.get("confidence")
        )
        self._cache.put(source, external_id, canonical_id)
        logger.info("identity.registered", source=source.value, external_id=external_id, person_id=canonical_id)
        return self.store.get_identity(source, external_id) or stored

    def remove_external_id(self, source: Provider | str, external_id: str) -> bool:
        source = Provider(source)
        self._cache.discard(source, external_id)
        return self.store.delete_identity(source, external_id)

    def delete_person(self, canonical_id: str) -> bool:
        """Delete a canonical person with its identities and evict them from the cache.

        Raises:
            PersonInUseError: the person is still someone's parent.
        """
        deleted = self.store.delete_person(canonical_id)
        self._cache.discard_person(canonical_id)
        if deleted:
            logger.info("identity.person_deleted", person_id=canonical_id)
        return deleted

    def get_external_ids(self, canonical_id: str) -> list[ExternalIdentity]:
        return self.store.identities_for_person(canonical_id)

    def get_external_id(self, canonical_id: str, source: Provider | str) -> ExternalIdentity | None:
        return self.store.identity_for_person(canonical_id, Provider(source))

    def batch_get_canonical_ids(self, source: Provider | str, external_ids: list[str]) -> dict[str, str]:
        """Map each known external ID on ``source`` to its canonical ID; unknown IDs are omitted."""
        source = Provider(source)
        found: dict[str, str] = {}
        missing: list[str] = []
        for external_id in external_ids:
            cached = self._cache.get(source, external_id)
            if cached is None:
                missing.append(external_id)
            else:
                found[external_id] = cached
        for external_id, person_id in self.store.identities_for_source(source, missing).items():
            self._cache.put(source, external_id, person_id)
            found[external_id] = person_id
        return found

    def clear_cache(self) -> None:
        self._cache.clear()
