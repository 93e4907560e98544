"""
Versioned resource store.

One store serves every registered resource kind; per-kind behaviour comes
from the ``KindRegistry`` (schema, search parameters).

Lifecycle per (resourceType, id)::

    NonExistent --create--> Active --update--> Active (versionId + 1)
                            Active --delete--> Deleted (terminal)

Every version, including the delete tombstone, is appended to
``resource_versions``; rows there are never rewritten. The ``resources``
row is the current-version pointer and is only changed through a
compare-and-swap on ``version_id``, so a concurrent writer holding a stale
version gets ``ConflictVersion`` instead of silently overwriting.
Validation and lookups happen before the write transaction; a failure
inside the transaction rolls everything back, including the audit row.
"""

from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from fhir_server.models.resource import ResourceRecord, ResourceVersion
from fhir_server.schemas.resources import Resource
from fhir_server.services.audit import log_action
from fhir_server.services.encryption import EncryptionService
from fhir_server.services.errors import ConflictVersion, Gone, InvalidState, NotFound
from fhir_server.services.registry import KindRegistry, ResourceKind
from fhir_server.services.search import matches, resolve_search_params
from fhir_server.services.validation import ValidationEngine

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_instant(moment: datetime) -> str:
    """FHIR instant with millisecond precision, e.g. 2024-05-01T10:00:00.000Z."""
    if moment.tzinfo is None:
        # SQLite hands back naive values; they are stored in UTC
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class SearchPage:
    total: int
    offset: int
    count: int
    resources: list[Resource]


@dataclass
class HistoryEntry:
    version_id: int
    last_updated: datetime
    deleted: bool
    resource: Resource | None


class ResourceStore:
    def __init__(
        self,
        session_factory: sessionmaker,
        registry: KindRegistry,
        validator: ValidationEngine,
        encryption: EncryptionService,
        *,
        id_factory: Callable[[], str] | None = None,
        clock: Callable[[], datetime] = utc_now,
        require_version_token: bool = True,
        page_size: int = 20,
        max_page_size: int = 100,
    ):
        self._session_factory = session_factory
        self.registry = registry
        self.validator = validator
        self.encryption = encryption
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._clock = clock
        self.require_version_token = require_version_token
        self.page_size = page_size
        self.max_page_size = max_page_size

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(self, resource_type: str, resource: dict[str, Any], actor: str = "system") -> Resource:
        kind = self.registry.get(resource_type)
        if resource.get("id") is not None:
            raise InvalidState(
                "Resource id is assigned by the server and must not be set on create",
                resource_type=resource_type,
                resource_id=str(resource.get("id")),
                field="id",
            )
        self.validator.validate(resource)
        self._check_type(kind, resource)

        resource_id = self._id_factory()
        now = self._clock()
        stored = self._stamp(resource, resource_id, 1, now)
        body = self.encryption.encrypt_json(stored)

        try:
            with self._session_factory() as db, db.begin():
                db.add(
                    ResourceRecord(
                        resource_type=resource_type,
                        resource_id=resource_id,
                        version_id=1,
                        last_updated=now,
                        deleted=False,
                        encrypted_body=body,
                    )
                )
                db.flush()
                db.add(self._version_row(resource_type, resource_id, 1, now, body))
                log_action(
                    db,
                    actor=actor,
                    action="create",
                    resource_type=resource_type,
                    resource_id=resource_id,
                    version_id=1,
                    timestamp=now,
                )
        except IntegrityError as exc:
            raise InvalidState(
                f"{resource_type}/{resource_id} already exists",
                resource_type=resource_type,
                resource_id=resource_id,
            ) from exc

        logger.info("Created %s/%s (version 1)", resource_type, resource_id)
        return stored

    def update(
        self,
        resource_type: str,
        resource_id: str,
        resource: dict[str, Any],
        expected_version: int | str | None = None,
        actor: str = "system",
    ) -> Resource:
        kind = self.registry.get(resource_type)
        current = self._current_record(resource_type, resource_id)

        body_id = resource.get("id")
        if body_id is not None and body_id != resource_id:
            raise InvalidState(
                f"Resource id '{body_id}' does not match '{resource_id}'",
                resource_type=resource_type,
                resource_id=resource_id,
                field="id",
            )
        self.validator.validate(resource)
        self._check_type(kind, resource)
        self._check_version(resource_type, resource_id, current.version_id, expected_version)

        new_version = current.version_id + 1
        now = self._clock()
        stored = self._stamp(resource, resource_id, new_version, now)
        body = self.encryption.encrypt_json(stored)

        self._commit_version(
            resource_type,
            resource_id,
            current.version_id,
            new_version,
            now,
            body,
            deleted=False,
            action="update",
            actor=actor,
        )
        logger.info("Updated %s/%s (version %d)", resource_type, resource_id, new_version)
        return stored

    def delete(self, resource_type: str, resource_id: str, actor: str = "system") -> None:
        self.registry.get(resource_type)
        current = self._current_record(resource_type, resource_id)

        new_version = current.version_id + 1
        now = self._clock()
        self._commit_version(
            resource_type,
            resource_id,
            current.version_id,
            new_version,
            now,
            None,
            deleted=True,
            action="delete",
            actor=actor,
        )
        logger.info("Deleted %s/%s (tombstone version %d)", resource_type, resource_id, new_version)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read(self, resource_type: str, resource_id: str) -> Resource:
        self.registry.get(resource_type)
        record = self._current_record(resource_type, resource_id)
        return self.encryption.decrypt_json(record.encrypted_body)

    def read_version(self, resource_type: str, resource_id: str, version_id: int | str) -> Resource:
        self.registry.get(resource_type)
        try:
            version = int(version_id)
        except (TypeError, ValueError):
            version = 0
        with self._session_factory() as db:
            row = db.get(ResourceVersion, (resource_type, resource_id, version))
        if row is None:
            raise NotFound(
                f"{resource_type}/{resource_id} has no version '{version_id}'",
                resource_type=resource_type,
                resource_id=resource_id,
            )
        if row.deleted:
            raise Gone(
                f"{resource_type}/{resource_id} version {version} is a deletion",
                resource_type=resource_type,
                resource_id=resource_id,
            )
        return self.encryption.decrypt_json(row.encrypted_body)

    def history(self, resource_type: str, resource_id: str) -> list[HistoryEntry]:
        """All versions of one resource, newest first; tombstones included."""
        self.registry.get(resource_type)
        with self._session_factory() as db:
            rows = db.scalars(
                select(ResourceVersion)
                .where(
                    ResourceVersion.resource_type == resource_type,
                    ResourceVersion.resource_id == resource_id,
                )
                .order_by(ResourceVersion.version_id.desc())
            ).all()
        if not rows:
            raise NotFound(
                f"{resource_type}/{resource_id} not found",
                resource_type=resource_type,
                resource_id=resource_id,
            )
        return [
            HistoryEntry(
                version_id=row.version_id,
                last_updated=row.last_updated,
                deleted=row.deleted,
                resource=None if row.deleted else self.encryption.decrypt_json(row.encrypted_body),
            )
            for row in rows
        ]

    def search(
        self, resource_type: str, params: dict[str, str] | list[tuple[str, str]]
    ) -> SearchPage:
        kind = self.registry.get(resource_type)
        query = resolve_search_params(kind, params, self.page_size, self.max_page_size)

        # One SELECT, so the page is computed over a single consistent snapshot
        with self._session_factory() as db:
            rows = db.scalars(
                select(ResourceRecord)
                .where(
                    ResourceRecord.resource_type == resource_type,
                    ResourceRecord.deleted.is_(False),
                )
                .order_by(ResourceRecord.resource_id)
            ).all()

        matched = []
        for row in rows:
            resource = self.encryption.decrypt_json(row.encrypted_body)
            if matches(kind, resource, query):
                matched.append(resource)

        logger.info(
            "Search %s %s: %d match(es)", resource_type, [c.field for c in query.criteria], len(matched)
        )
        return SearchPage(
            total=len(matched),
            offset=query.offset,
            count=query.count,
            resources=matched[query.offset : query.offset + query.count],
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _current_record(self, resource_type: str, resource_id: str) -> ResourceRecord:
        with self._session_factory() as db:
            record = db.get(ResourceRecord, (resource_type, resource_id))
        if record is None:
            raise NotFound(
                f"{resource_type}/{resource_id} not found",
                resource_type=resource_type,
                resource_id=resource_id,
            )
        if record.deleted:
            raise Gone(
                f"{resource_type}/{resource_id} has been deleted",
                resource_type=resource_type,
                resource_id=resource_id,
            )
        return record

    def _check_type(self, kind: ResourceKind, resource: dict[str, Any]) -> None:
        if resource.get("resourceType") != kind.name:
            raise InvalidState(
                f"resourceType '{resource.get('resourceType')}' does not match endpoint '{kind.name}'",
                resource_type=kind.name,
                field="resourceType",
            )

    def _check_version(
        self,
        resource_type: str,
        resource_id: str,
        current: int,
        expected: int | str | None,
    ) -> None:
        if expected is None:
            if self.require_version_token:
                raise ConflictVersion(
                    f"Updating {resource_type}/{resource_id} requires the current version "
                    f"({current}) as concurrency token",
                    resource_type=resource_type,
                    resource_id=resource_id,
                )
            return
        if str(expected).strip() != str(current):
            logger.warning(
                "Version conflict on %s/%s: expected %s, current %d",
                resource_type,
                resource_id,
                expected,
                current,
            )
            raise ConflictVersion(
                f"Version '{expected}' does not match current version {current} "
                f"of {resource_type}/{resource_id}",
                resource_type=resource_type,
                resource_id=resource_id,
            )

    def _commit_version(
        self,
        resource_type: str,
        resource_id: str,
        current_version: int,
        new_version: int,
        now: datetime,
        body: str | None,
        *,
        deleted: bool,
        action: str,
        actor: str,
    ) -> None:
        conflict = ConflictVersion(
            f"{resource_type}/{resource_id} was modified concurrently",
            resource_type=resource_type,
            resource_id=resource_id,
        )
        try:
            with self._session_factory() as db, db.begin():
                result = db.execute(
                    update(ResourceRecord)
                    .where(
                        ResourceRecord.resource_type == resource_type,
                        ResourceRecord.resource_id == resource_id,
                        ResourceRecord.version_id == current_version,
                        ResourceRecord.deleted.is_(False),
                    )
                    .values(
                        version_id=new_version,
                        last_updated=now,
                        deleted=deleted,
                        encrypted_body=body,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise conflict
                db.add(
                    self._version_row(resource_type, resource_id, new_version, now, body, deleted)
                )
                log_action(
                    db,
                    actor=actor,
                    action=action,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    version_id=new_version,
                    timestamp=now,
                )
        except IntegrityError as exc:
            raise conflict from exc

    @staticmethod
    def _version_row(
        resource_type: str,
        resource_id: str,
        version_id: int,
        now: datetime,
        body: str | None,
        deleted: bool = False,
    ) -> ResourceVersion:
        return ResourceVersion(
            resource_type=resource_type,
            resource_id=resource_id,
            version_id=version_id,
            last_updated=now,
            deleted=deleted,
            encrypted_body=body,
        )

    @staticmethod
    def _stamp(resource: dict[str, Any], resource_id: str, version_id: int, now: datetime) -> Resource:
        """Copy of the resource carrying server-assigned id and meta."""
        body = copy.deepcopy(resource)
        meta = dict(body.pop("meta", None) or {})
        meta["versionId"] = str(version_id)
        meta["lastUpdated"] = format_instant(now)
        body.pop("id", None)
        return {"resourceType": body.pop("resourceType"), "id": resource_id, "meta": meta, **body}
