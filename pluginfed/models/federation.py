"""Federation models: sources, subscriptions, mirrors and their audit trail."""

import datetime
import enum
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import validates

from pluginfed.models.base import Base, CreatedAtMixin
from pluginfed.utils.clock import utc_now

# old_version recorded for the first mirrored version of a plugin
SENTINEL_VERSION = "0.0.0"


class SourceStatus(str, enum.Enum):
    """Lifecycle states of a remote source."""

    PENDING = "pending"
    VERIFIED = "verified"
    ERROR = "error"


class VerificationType(str, enum.Enum):
    """Why a verification attempt was made."""

    INITIAL = "initial"
    PERIODIC = "periodic"
    MANUAL = "manual"


class VerificationResult(str, enum.Enum):
    """Outcome of a verification attempt."""

    SUCCESS = "success"
    FAILURE = "failure"


def _iso(value: Optional[datetime.datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def normalize_instance_url(instance_url: str) -> str:
    """Strip whitespace and trailing slashes from an instance URL."""
    return instance_url.strip().rstrip("/")


def make_source_id(instance_url: str, username: str) -> str:
    """Derive the ``username@host`` identifier of a source.

    Raises:
        ValueError: If the URL has no host or the username is empty
    """
    host = urlsplit(normalize_instance_url(instance_url)).hostname
    if not host:
        raise ValueError(f"Instance URL has no host: {instance_url!r}")
    if not username or not username.strip():
        raise ValueError("Username must not be empty")
    return f"{username.strip()}@{host}"


class Source(Base, CreatedAtMixin):
    """A remote plugin-publishing identity being mirrored."""

    __tablename__ = "sources"
    __table_args__ = (UniqueConstraint("instance_url", "username", name="uq_sources_instance_user"),)

    row_id = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(255), unique=True, nullable=False)
    instance_url = Column(String(2048), nullable=False)
    username = Column(String(255), nullable=False)
    public_key = Column(Text, nullable=False)
    status = Column(String(16), default=SourceStatus.PENDING.value, nullable=False)
    trust_score = Column(Float, default=0.0, nullable=False)
    last_sync = Column(DateTime, nullable=True)
    asset_domain = Column(String(2048), nullable=True)
    asset_naming_scheme = Column(String(2048), nullable=True)

    @validates("trust_score")
    def validate_trust_score(self, key, value):
        """Clamp the trust score at zero."""
        return max(0.0, float(value or 0.0))

    @property
    def has_asset_info(self) -> bool:
        return bool(self.asset_domain and self.asset_naming_scheme)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "instance_url": self.instance_url,
            "username": self.username,
            "public_key": self.public_key,
            "status": self.status,
            "trust_score": self.trust_score,
            "created_at": _iso(self.created_at),
            "last_sync": _iso(self.last_sync),
            "asset_domain": self.asset_domain,
            "asset_naming_scheme": self.asset_naming_scheme,
        }

    def __repr__(self) -> str:
        return f"<Source(id='{self.id}', status='{self.status}', trust_score={self.trust_score})>"


class Subscription(Base, CreatedAtMixin):
    """A local subscriber's interest in a source."""

    __tablename__ = "subscriptions"
    __table_args__ = (UniqueConstraint("source_id", "subscriber", name="uq_subscriptions_source_subscriber"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_id = Column(String(255), ForeignKey("sources.id"), nullable=False)
    subscriber = Column(String(255), nullable=False)
    filters = Column(JSON, nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "subscriber": self.subscriber,
            "filters": self.filters or {},
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<Subscription(source_id='{self.source_id}', subscriber='{self.subscriber}')>"


class MirroredPlugin(Base):
    """A plugin version fetched from a source and stored locally. Never updated."""

    __tablename__ = "mirrored_plugins"
    __table_args__ = (
        UniqueConstraint("plugin_id", "source_id", "version", name="uq_mirrored_plugins_version"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    plugin_id = Column(String(255), nullable=False)
    source_id = Column(String(255), ForeignKey("sources.id"), nullable=False)
    name = Column(String(512), nullable=False)
    version = Column(String(64), nullable=False)
    description = Column(Text, nullable=True)
    local_path = Column(String(2048), nullable=False)
    signature = Column(Text, nullable=False, default="")
    mirror_date = Column(DateTime, default=utc_now, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plugin_id": self.plugin_id,
            "source_id": self.source_id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "local_path": self.local_path,
            "signature": self.signature,
            "mirror_date": _iso(self.mirror_date),
        }

    def __repr__(self) -> str:
        return f"<MirroredPlugin(plugin_id='{self.plugin_id}', source_id='{self.source_id}', version='{self.version}')>"


class VersionUpdate(Base):
    """A detected version transition for a (plugin, source) pair."""

    __tablename__ = "version_updates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    plugin_id = Column(String(255), nullable=False)
    source_id = Column(String(255), ForeignKey("sources.id"), nullable=False)
    old_version = Column(String(64), nullable=False)
    new_version = Column(String(64), nullable=False)
    update_time = Column(DateTime, default=utc_now, nullable=False)
    notified = Column(Boolean, default=False, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "plugin_id": self.plugin_id,
            "source_id": self.source_id,
            "old_version": self.old_version,
            "new_version": self.new_version,
            "update_time": _iso(self.update_time),
            "notified": self.notified,
        }

    def __repr__(self) -> str:
        return (
            f"<VersionUpdate(plugin_id='{self.plugin_id}', "
            f"'{self.old_version}' -> '{self.new_version}')>"
        )


class SourceVerification(Base):
    """Append-only audit record of one verification attempt."""

    __tablename__ = "source_verifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_id = Column(String(255), ForeignKey("sources.id"), nullable=False)
    verifier = Column(String(255), nullable=False)
    verification_type = Column(String(16), nullable=False)
    result = Column(String(16), nullable=False)
    details = Column(JSON, nullable=True)
    verified_at = Column(DateTime, default=utc_now, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "verifier": self.verifier,
            "verification_type": self.verification_type,
            "result": self.result,
            "details": self.details,
            "verified_at": _iso(self.verified_at),
        }

    def __repr__(self) -> str:
        return f"<SourceVerification(source_id='{self.source_id}', result='{self.result}')>"


class SyncFailure(Base, CreatedAtMixin):
    """Retry ticket for a failed synchronization episode."""

    __tablename__ = "sync_failures"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_id = Column(String(255), ForeignKey("sources.id"), nullable=False)
    error_message = Column(Text, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    next_retry = Column(DateTime, nullable=True)
    abandoned_at = Column(DateTime, nullable=True)

    @property
    def abandoned(self) -> bool:
        return self.abandoned_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "next_retry": _iso(self.next_retry),
            "created_at": _iso(self.created_at),
            "abandoned_at": _iso(self.abandoned_at),
        }

    def __repr__(self) -> str:
        return f"<SyncFailure(source_id='{self.source_id}', retry_count={self.retry_count})>"


Index("idx_sources_trust", Source.trust_score.desc())
Index("idx_mirrored_plugins_source", MirroredPlugin.source_id, MirroredPlugin.mirror_date.desc())
Index("idx_version_updates_time", VersionUpdate.update_time.desc())
Index("idx_subscriptions_subscriber", Subscription.subscriber, Subscription.created_at.desc())
Index("idx_sync_failures_next_retry", SyncFailure.next_retry)
