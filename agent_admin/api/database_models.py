"""SQLAlchemy database models for the SQL config store."""
from datetime import datetime, UTC
import bcrypt
from sqlalchemy import Column, String, DateTime, Boolean, Integer, JSON, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utc_now():
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class OrganizationDocument(Base):
    """Organization-level document (billing plan, Stripe ids, extras)."""
    __tablename__ = "organizations"

    org_id = Column(String(100), primary_key=True, index=True)
    data = Column(JSON, nullable=False, default=dict)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    def __repr__(self):
        return f"<OrganizationDocument(org_id={self.org_id}, version={self.version})>"


class AgentDocument(Base):
    """One BusinessConfig document per (organization, agent)."""
    __tablename__ = "agents"

    org_id = Column(String(100), primary_key=True, index=True)
    agent_id = Column(String(100), primary_key=True)
    data = Column(JSON, nullable=False, default=dict)
    version = Column(Integer, nullable=False, default=1)
    # Mirrors data.vapi.assistantId so webhooks can find the agent
    assistant_id = Column(String(100), nullable=True, index=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    def __repr__(self):
        return f"<AgentDocument(org_id={self.org_id}, agent_id={self.agent_id}, version={self.version})>"


class CallSummary(Base):
    """Persisted end-of-call report."""
    __tablename__ = "call_summaries"

    call_id = Column(String(100), primary_key=True)
    org_id = Column(String(100), nullable=True, index=True)
    agent_id = Column(String(100), nullable=True)
    assistant_id = Column(String(100), nullable=True, index=True)
    summary = Column(Text, nullable=False, default="")
    transcript = Column(Text, nullable=True)
    customer_name = Column(String(200), nullable=True)
    customer_email = Column(String(320), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    email_status = Column(String(20), nullable=False, default="skipped")
    created_at = Column(DateTime, default=utc_now, nullable=False)

    def to_dict(self):
        return {
            "callId": self.call_id,
            "orgId": self.org_id,
            "agentId": self.agent_id,
            "assistantId": self.assistant_id,
            "summary": self.summary,
            "transcript": self.transcript,
            "customerName": self.customer_name,
            "customerEmail": self.customer_email,
            "customerPhone": self.customer_phone,
            "emailStatus": self.email_status,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<CallSummary(call_id={self.call_id}, email_status={self.email_status})>"


class APIKey(Base):
    """Org-scoped admin API key with bcrypt hashing."""
    __tablename__ = "api_keys"

    # Prefix of the key ("ak_" + 13 chars) indexes the lookup
    key_prefix = Column(String(20), primary_key=True, index=True)
    key_hash = Column(String(255), nullable=False)
    org_id = Column(String(100), nullable=False, index=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    last_used = Column(DateTime, default=utc_now, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    description = Column(String(500), nullable=True)

    @staticmethod
    def hash_key(api_key: str) -> str:
        """Hash API key using bcrypt."""
        return bcrypt.hashpw(api_key.encode(), bcrypt.gensalt()).decode()

    @staticmethod
    def verify_key(api_key: str, key_hash: str) -> bool:
        """Verify API key against hash."""
        return bcrypt.checkpw(api_key.encode(), key_hash.encode())

    @staticmethod
    def get_key_prefix(api_key: str) -> str:
        """Get first 16 chars for indexing."""
        return api_key[:16]

    def __repr__(self):
        return f"<APIKey(prefix={self.key_prefix}, org={self.org_id}, active={self.is_active})>"
