"""hookrelay service layer.

- signatures: HMAC-SHA256 webhook signature verification
- JobQueue: queue abstraction with in-memory and database backings
- retry: exponential-backoff retry wrapper with dead-letter sinks
- AuditTrail: append-only audit trail
- RateLimiter: fixed-window limiter for webhook endpoints
"""

from hookrelay.services.audit import (
    AuditEntry,
    AuditTrail,
    AuditWriteError,
    DatabaseAuditTrail,
    InMemoryAuditTrail,
)
from hookrelay.services.database_queue import DatabaseJobQueue
from hookrelay.services.job_queue import (
    InMemoryJobQueue,
    JobName,
    JobQueue,
    JobQueueError,
    JobStats,
    QueueJob,
    QueueUnavailableError,
)
from hookrelay.services.rate_limit import RateLimiter
from hookrelay.services.retry import (
    AGGRESSIVE,
    CONSERVATIVE,
    NONE,
    RETRY_PRESETS,
    STANDARD,
    AuditDeadLetterSink,
    InMemoryDeadLetterStore,
    LoggingDeadLetterSink,
    RetryConfig,
    RetryManager,
    RetryScheduler,
    RetryTracker,
    calculate_retry_delay,
    get_retry_metadata,
    get_retry_preset,
    with_retry,
)
from hookrelay.services.signatures import (
    GITHUB_SIGNATURE,
    LINEAR_SIGNATURE,
    SignatureScheme,
    compute_signature,
    verify_signature,
)

__all__ = [
    "AGGRESSIVE",
    "CONSERVATIVE",
    "GITHUB_SIGNATURE",
    "LINEAR_SIGNATURE",
    "NONE",
    "RETRY_PRESETS",
    "STANDARD",
    "AuditDeadLetterSink",
    "AuditEntry",
    "AuditTrail",
    "AuditWriteError",
    "DatabaseAuditTrail",
    "DatabaseJobQueue",
    "InMemoryAuditTrail",
    "InMemoryDeadLetterStore",
    "InMemoryJobQueue",
    "JobName",
    "JobQueue",
    "JobQueueError",
    "JobStats",
    "LoggingDeadLetterSink",
    "QueueJob",
    "QueueUnavailableError",
    "RateLimiter",
    "RetryConfig",
    "RetryManager",
    "RetryScheduler",
    "RetryTracker",
    "SignatureScheme",
    "calculate_retry_delay",
    "compute_signature",
    "get_retry_metadata",
    "get_retry_preset",
    "verify_signature",
    "with_retry",
]
