"""Org-scoped admin API keys.

A key is ``ak_`` followed by 32 hex characters. Only a bcrypt hash is
stored; the first 16 characters are kept in clear as the lookup index, so
validation is one indexed read plus one bcrypt check.
"""
import secrets
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from agent_admin.api.database_models import Base, APIKey
from agent_admin.config_store import create_db_engine

KEY_PREFIX = "ak_"


class InvalidAPIKeyError(Exception):
    """Raised when API key is invalid or inactive."""
    pass


class OrgAccessError(Exception):
    """Raised when a valid key belongs to another organization."""
    pass


@dataclass
class ApiKeyInfo:
    """Listing view of a key; never includes the key itself."""
    prefix: str
    org_id: str
    description: Optional[str]
    is_active: bool
    created_at: datetime
    last_used: datetime


class APIKeyManager:
    """Issues, validates and revokes admin API keys."""

    def __init__(self, database_url: str):
        self.engine = create_db_engine(database_url)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine)

    @staticmethod
    def _matching(db, api_key: str, active_only: bool = True) -> Optional[APIKey]:
        if not api_key or not api_key.startswith(KEY_PREFIX):
            return None
        query = db.query(APIKey).filter(APIKey.key_prefix == APIKey.get_key_prefix(api_key))
        if active_only:
            query = query.filter(APIKey.is_active.is_(True))
        row = query.first()
        if row is None or not APIKey.verify_key(api_key, row.key_hash):
            return None
        return row

    def generate_api_key(self, org_id: str, description: Optional[str] = None) -> str:
        """
        Issue a key for an organization.

        The plain key is only ever returned here.
        """
        api_key = KEY_PREFIX + secrets.token_hex(16)
        now = datetime.now(UTC)

        with self.SessionLocal() as db:
            db.add(APIKey(
                key_prefix=APIKey.get_key_prefix(api_key),
                key_hash=APIKey.hash_key(api_key),
                org_id=org_id,
                created_at=now,
                last_used=now,
                is_active=True,
                description=description
            ))
            db.commit()

        return api_key

    def validate_api_key(self, api_key: str) -> str:
        """
        Validate API key and return the org it belongs to.

        Raises:
            InvalidAPIKeyError: If key is invalid or inactive
        """
        with self.SessionLocal() as db:
            row = self._matching(db, api_key)
            if row is None:
                raise InvalidAPIKeyError("Invalid or inactive API key")
            row.last_used = datetime.now(UTC)
            db.commit()
            return row.org_id

    def authorize_org(self, api_key: str, org_id: str) -> str:
        """
        Validate a key for one organization's routes.

        Raises:
            InvalidAPIKeyError: If key is invalid or inactive
            OrgAccessError: If the key administers a different organization
        """
        key_org = self.validate_api_key(api_key)
        if key_org != org_id:
            raise OrgAccessError("API key does not grant access to this organization")
        return key_org

    def list_api_keys(self, org_id: str) -> List[ApiKeyInfo]:
        with self.SessionLocal() as db:
            rows = (
                db.query(APIKey)
                .filter(APIKey.org_id == org_id)
                .order_by(APIKey.created_at)
                .all()
            )
            return [
                ApiKeyInfo(
                    prefix=r.key_prefix,
                    org_id=r.org_id,
                    description=r.description,
                    is_active=r.is_active,
                    created_at=r.created_at,
                    last_used=r.last_used,
                )
                for r in rows
            ]

    def deactivate_api_key(self, api_key: str):
        """
        Revoke a key. Revoked keys stay listed as inactive.

        Raises:
            InvalidAPIKeyError: If key not found
        """
        with self.SessionLocal() as db:
            row = self._matching(db, api_key, active_only=False)
            if row is None:
                raise InvalidAPIKeyError("API key not found")
            row.is_active = False
            db.commit()
