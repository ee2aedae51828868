"""Federation trust-and-mirror engine."""

from pluginfed.federation.activity import ActivityFeed
from pluginfed.federation.failures import FailureManager, RetryReport
from pluginfed.federation.ledger import TrustLedger
from pluginfed.federation.mirror import MirrorSynchronizer, SyncResult
from pluginfed.federation.prober import HealthProber, HealthResult
from pluginfed.federation.registry import SourceRegistry
from pluginfed.federation.scheduler import FederationScheduler, SweepReport
from pluginfed.federation.service import FederationService
