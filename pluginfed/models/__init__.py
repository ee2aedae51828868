"""Database models for the federation trust store."""

from pluginfed.models.base import Base, CreatedAtMixin
from pluginfed.models.federation import (
    SENTINEL_VERSION,
    MirroredPlugin,
    Source,
    SourceStatus,
    SourceVerification,
    Subscription,
    SyncFailure,
    VerificationResult,
    VerificationType,
    VersionUpdate,
)
