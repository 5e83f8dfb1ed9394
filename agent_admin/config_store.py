"""
Config Store accessor.

BusinessConfig documents live under (org_id, agent_id) and organization
documents under org_id. Every document carries a version token; writes are
merge-writes that compare-and-swap on that token, so two concurrent edits
can never silently overwrite each other.

Two backends share one interface:
    ConfigStore          - SQLAlchemy (default, DATABASE_URL)
    FirestoreConfigStore - organizations/{org}/agents/{agent} in Firestore
"""
import copy
import logging
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional

from google.api_core import exceptions as gexc
from google.cloud.firestore_v1.base_query import FieldFilter
from sqlalchemy import create_engine, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from agent_admin import config
from agent_admin.api.database_models import Base, AgentDocument, OrganizationDocument, CallSummary
from agent_admin.business_config import BusinessConfig
from agent_admin.firebase import get_firestore_client

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3


class ConfigNotFoundError(Exception):
    """Raised when the requested document does not exist."""
    pass


class ConfigStoreError(Exception):
    """Raised when the backing store can't be reached or fails."""
    pass


class VersionConflictError(Exception):
    """Raised when a write was based on a stale version."""

    def __init__(self, message: str, current_version: Optional[str] = None):
        super().__init__(message)
        self.current_version = current_version


@dataclass
class StoredDocument:
    """A document plus the version token it was read at."""
    data: Dict[str, Any]
    version: str
    org_id: Optional[str] = None
    agent_id: Optional[str] = None

    @property
    def config(self) -> BusinessConfig:
        return BusinessConfig.model_validate(self.data)


def deep_merge(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge ``patch`` into a copy of ``base``.

    Nested dicts merge key by key; lists and scalars in the patch replace
    the base value. Keys absent from the patch are kept as they are.
    """
    merged = copy.deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def validate_agent_document(data: Dict[str, Any]) -> Dict[str, Any]:
    """Validate as BusinessConfig and return the normalized camelCase document."""
    return BusinessConfig.model_validate(data).to_document()


def _assistant_id(document: Dict[str, Any]) -> Optional[str]:
    vapi = document.get("vapi")
    if isinstance(vapi, dict):
        return vapi.get("assistantId")
    return None


def create_db_engine(database_url: str):
    """Engine for a database URL; in-memory SQLite is shared across threads."""
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, pool_pre_ping=True)


class ConfigStore:
    """
    SQL-backed config store.

    Pattern: JSON column per document + integer version column.
    A write is UPDATE ... WHERE version = <read version>; zero rows updated
    means someone else wrote first.
    """

    def __init__(self, database_url: Optional[str] = None, engine=None):
        self.engine = engine or create_db_engine(database_url or config.get_database_url())
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine)

    # Agents

    def get_agent_config(self, org_id: str, agent_id: str) -> StoredDocument:
        """
        Fetch an agent's BusinessConfig document.

        Raises:
            ConfigNotFoundError: If no such agent exists
            ConfigStoreError: If the database fails
        """
        try:
            with self.SessionLocal() as db:
                row = db.get(AgentDocument, (org_id, agent_id))
                found = self._agent_document(row) if row else None
        except SQLAlchemyError as e:
            logger.error(f"Config store read failed for {org_id}/{agent_id}: {e}")
            raise ConfigStoreError("Config store unavailable") from e

        if found is None:
            raise ConfigNotFoundError(f"Agent not found: {org_id}/{agent_id}")
        return found

    def merge_agent_config(
        self,
        org_id: str,
        agent_id: str,
        patch: Dict[str, Any],
        expected_version: Optional[str] = None
    ) -> StoredDocument:
        """
        Deep-merge ``patch`` into the stored document (creating it if absent).

        Args:
            org_id: Organization identifier
            agent_id: Agent identifier
            patch: Partial camelCase document
            expected_version: Version the caller's edit is based on; when
                given, a different stored version is a conflict

        Returns:
            The stored document after the write

        Raises:
            VersionConflictError: If expected_version is stale, or writers
                kept racing past MAX_WRITE_ATTEMPTS
            pydantic.ValidationError: If the merged document is invalid
            ConfigStoreError: If the database fails
        """
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            try:
                current = self.get_agent_config(org_id, agent_id)
            except ConfigNotFoundError:
                current = None

            self._check_expected(current, expected_version)

            document = validate_agent_document(deep_merge(current.data if current else {}, patch))
            if self._write_agent(org_id, agent_id, document, current):
                logger.info(f"Saved agent config {org_id}/{agent_id} (attempt {attempt})")
                return self.get_agent_config(org_id, agent_id)

            if expected_version is not None:
                break
            logger.warning(f"Concurrent write on {org_id}/{agent_id}, retrying merge")

        raise VersionConflictError(f"Agent {org_id}/{agent_id} was modified concurrently")

    def list_agents(self, org_id: str) -> List[StoredDocument]:
        try:
            with self.SessionLocal() as db:
                rows = db.query(AgentDocument).filter(AgentDocument.org_id == org_id).order_by(AgentDocument.agent_id).all()
                return [self._agent_document(r) for r in rows]
        except SQLAlchemyError as e:
            raise ConfigStoreError("Config store unavailable") from e

    def find_agent_by_assistant_id(self, assistant_id: str) -> Optional[StoredDocument]:
        """Agent whose vapi.assistantId matches, or None."""
        try:
            with self.SessionLocal() as db:
                row = db.query(AgentDocument).filter(AgentDocument.assistant_id == assistant_id).first()
                return self._agent_document(row) if row else None
        except SQLAlchemyError as e:
            raise ConfigStoreError("Config store unavailable") from e

    # Organizations

    def get_organization(self, org_id: str) -> StoredDocument:
        try:
            with self.SessionLocal() as db:
                row = db.get(OrganizationDocument, org_id)
                found = StoredDocument(dict(row.data), str(row.version), org_id=org_id) if row else None
        except SQLAlchemyError as e:
            raise ConfigStoreError("Config store unavailable") from e

        if found is None:
            raise ConfigNotFoundError(f"Organization not found: {org_id}")
        return found

    def merge_organization(
        self,
        org_id: str,
        patch: Dict[str, Any],
        expected_version: Optional[str] = None
    ) -> StoredDocument:
        """Deep-merge into the organization document, creating it if absent."""
        for _ in range(MAX_WRITE_ATTEMPTS):
            try:
                current = self.get_organization(org_id)
            except ConfigNotFoundError:
                current = None

            self._check_expected(current, expected_version)

            document = deep_merge(current.data if current else {}, patch)
            if self._write_organization(org_id, document, current):
                return self.get_organization(org_id)
            if expected_version is not None:
                break

        raise VersionConflictError(f"Organization {org_id} was modified concurrently")

    # Call summaries

    def save_call_summary(self, call_id: str, **fields) -> Dict[str, Any]:
        """Insert or replace the summary stored for a call."""
        try:
            with self.SessionLocal() as db:
                row = db.get(CallSummary, call_id)
                if row is None:
                    row = CallSummary(call_id=call_id)
                    db.add(row)
                for name, value in fields.items():
                    setattr(row, name, value)
                db.commit()
                db.refresh(row)
                return row.to_dict()
        except SQLAlchemyError as e:
            logger.error(f"Failed to save call summary {call_id}: {e}")
            raise ConfigStoreError("Config store unavailable") from e

    # Internals

    @staticmethod
    def _check_expected(current: Optional[StoredDocument], expected_version: Optional[str]):
        if expected_version is None:
            return
        current_version = current.version if current else None
        if current_version != str(expected_version):
            raise VersionConflictError(
                f"Version {expected_version} is stale (current: {current_version})",
                current_version=current_version,
            )

    @staticmethod
    def _agent_document(row: AgentDocument) -> StoredDocument:
        return StoredDocument(dict(row.data), str(row.version), org_id=row.org_id, agent_id=row.agent_id)

    def _write_agent(self, org_id, agent_id, document, current: Optional[StoredDocument]) -> bool:
        try:
            with self.SessionLocal() as db:
                if current is None:
                    db.add(AgentDocument(
                        org_id=org_id,
                        agent_id=agent_id,
                        data=document,
                        version=1,
                        assistant_id=_assistant_id(document),
                    ))
                    try:
                        db.commit()
                    except IntegrityError:
                        db.rollback()
                        return False
                    return True

                result = db.execute(
                    update(AgentDocument)
                    .where(
                        AgentDocument.org_id == org_id,
                        AgentDocument.agent_id == agent_id,
                        AgentDocument.version == int(current.version),
                    )
                    .values(
                        data=document,
                        version=AgentDocument.version + 1,
                        assistant_id=_assistant_id(document),
                        updated_at=datetime.now(UTC),
                    )
                )
                db.commit()
                return result.rowcount == 1
        except SQLAlchemyError as e:
            logger.error(f"Config store write failed for {org_id}/{agent_id}: {e}")
            raise ConfigStoreError("Config store unavailable") from e

    def _write_organization(self, org_id, document, current: Optional[StoredDocument]) -> bool:
        try:
            with self.SessionLocal() as db:
                if current is None:
                    db.add(OrganizationDocument(org_id=org_id, data=document, version=1))
                    try:
                        db.commit()
                    except IntegrityError:
                        db.rollback()
                        return False
                    return True

                result = db.execute(
                    update(OrganizationDocument)
                    .where(
                        OrganizationDocument.org_id == org_id,
                        OrganizationDocument.version == int(current.version),
                    )
                    .values(
                        data=document,
                        version=OrganizationDocument.version + 1,
                        updated_at=datetime.now(UTC),
                    )
                )
                db.commit()
                return result.rowcount == 1
        except SQLAlchemyError as e:
            logger.error(f"Config store write failed for organization {org_id}: {e}")
            raise ConfigStoreError("Config store unavailable") from e


class FirestoreConfigStore:
    """
    Firestore-backed config store.

    Documents live at organizations/{org} and organizations/{org}/agents/{agent}.
    The version token is the document's update_time; writes carry a
    last_update_time precondition (or create() for new documents).
    """

    def __init__(self, client=None):
        if client is None:
            client = get_firestore_client()
        self.client = client

    def _org_ref(self, org_id: str):
        return self.client.collection("organizations").document(org_id)

    def _agent_ref(self, org_id: str, agent_id: str):
        return self._org_ref(org_id).collection("agents").document(agent_id)

    @staticmethod
    def _version(snapshot) -> str:
        return snapshot.update_time.isoformat()

    def _read(self, ref, what: str):
        try:
            snapshot = ref.get()
        except gexc.GoogleAPICallError as e:
            logger.error(f"Firestore read failed for {what}: {e}")
            raise ConfigStoreError("Config store unavailable") from e
        return snapshot if snapshot.exists else None

    def get_agent_config(self, org_id: str, agent_id: str) -> StoredDocument:
        snapshot = self._read(self._agent_ref(org_id, agent_id), f"{org_id}/{agent_id}")
        if snapshot is None:
            raise ConfigNotFoundError(f"Agent not found: {org_id}/{agent_id}")
        return StoredDocument(snapshot.to_dict() or {}, self._version(snapshot), org_id=org_id, agent_id=agent_id)

    def merge_agent_config(self, org_id, agent_id, patch, expected_version=None) -> StoredDocument:
        ref = self._agent_ref(org_id, agent_id)
        self._merge(ref, patch, expected_version, validate_agent_document, f"Agent {org_id}/{agent_id}")
        return self.get_agent_config(org_id, agent_id)

    def list_agents(self, org_id: str) -> List[StoredDocument]:
        try:
            snapshots = list(self._org_ref(org_id).collection("agents").stream())
        except gexc.GoogleAPICallError as e:
            raise ConfigStoreError("Config store unavailable") from e
        return [
            StoredDocument(s.to_dict() or {}, self._version(s), org_id=org_id, agent_id=s.id)
            for s in snapshots
        ]

    def find_agent_by_assistant_id(self, assistant_id: str) -> Optional[StoredDocument]:
        try:
            query = self.client.collection_group("agents").where(
                filter=FieldFilter("vapi.assistantId", "==", assistant_id)
            ).limit(1)
            snapshots = list(query.stream())
        except gexc.GoogleAPICallError as e:
            raise ConfigStoreError("Config store unavailable") from e
        if not snapshots:
            return None
        s = snapshots[0]
        return StoredDocument(
            s.to_dict() or {}, self._version(s),
            org_id=s.reference.parent.parent.id, agent_id=s.id,
        )

    def get_organization(self, org_id: str) -> StoredDocument:
        snapshot = self._read(self._org_ref(org_id), org_id)
        if snapshot is None:
            raise ConfigNotFoundError(f"Organization not found: {org_id}")
        return StoredDocument(snapshot.to_dict() or {}, self._version(snapshot), org_id=org_id)

    def merge_organization(self, org_id, patch, expected_version=None) -> StoredDocument:
        self._merge(self._org_ref(org_id), patch, expected_version, lambda d: d, f"Organization {org_id}")
        return self.get_organization(org_id)

    def save_call_summary(self, call_id: str, **fields) -> Dict[str, Any]:
        record = {
            "callId": call_id,
            "orgId": fields.get("org_id"),
            "agentId": fields.get("agent_id"),
            "assistantId": fields.get("assistant_id"),
            "summary": fields.get("summary", ""),
            "transcript": fields.get("transcript"),
            "customerName": fields.get("customer_name"),
            "customerEmail": fields.get("customer_email"),
            "customerPhone": fields.get("customer_phone"),
            "emailStatus": fields.get("email_status", "skipped"),
            "createdAt": datetime.now(UTC).isoformat(),
        }
        try:
            self.client.collection("callSummaries").document(call_id).set(record)
        except gexc.GoogleAPICallError as e:
            raise ConfigStoreError("Config store unavailable") from e
        return record

    def _merge(self, ref, patch, expected_version, validate, what: str):
        for _ in range(MAX_WRITE_ATTEMPTS):
            snapshot = self._read(ref, what)
            current_version = self._version(snapshot) if snapshot else None
            if expected_version is not None and current_version != str(expected_version):
                raise VersionConflictError(
                    f"Version {expected_version} is stale (current: {current_version})",
                    current_version=current_version,
                )

            base = (snapshot.to_dict() or {}) if snapshot else {}
            document = validate(deep_merge(base, patch))
            try:
                if snapshot is None:
                    ref.create(document)
                else:
                    option = self.client.write_option(last_update_time=snapshot.update_time)
                    ref.update(document, option=option)
                return
            except (gexc.AlreadyExists, gexc.FailedPrecondition):
                if expected_version is not None:
                    break
                logger.warning(f"Concurrent write on {what}, retrying merge")
            except gexc.GoogleAPICallError as e:
                logger.error(f"Firestore write failed for {what}: {e}")
                raise ConfigStoreError("Config store unavailable") from e

        raise VersionConflictError(f"{what} was modified concurrently")


def create_config_store():
    """Config store for the configured backend."""
    backend = config.get_config_backend()
    if backend == "firestore":
        return FirestoreConfigStore()
    return ConfigStore()
