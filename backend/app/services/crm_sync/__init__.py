"""
CRM Sync Services.

Modular services for synchronizing Pipedrive persons and organizations
into the local database, and for pushing local changes back.
"""

from .error_classifier import ClassifiedError, ErrorType, classify_error, classify_exception, is_conflict_error
from .error_tracker import ErrorTracker, ErrorSummary
from .timeout_guard import (
    Deadline,
    TimeoutConfig,
    TimeoutMetricsTracker,
    TimeoutResult,
    calculate_progressive_timeout,
    execute_with_timeout,
    validate_timeout_config,
)
from .recovery import (
    RecoveryStrategy,
    RecoveryResult,
    execute_with_recovery,
    select_recovery_strategy,
    find_last_successful_sync_point,
    calculate_resume_parameters,
    create_batch_recovery_plan,
    create_multi_batch_recovery_plan,
)
from .organization_resolver import OrganizationResolver, OrganizationResolution
from .contact_batch_processor import ContactBatchProcessor, BatchProgress, SyncAbortedError
from .update_service import RecordUpdateService, UpdateResult, BatchUpdateRequest, BatchUpdateResult
from .activity_replication import ActivityReplicationService
from .sync_orchestrator import SyncOrchestrator, SyncRunOutcome, run_sync

__all__ = [
    "ClassifiedError",
    "ErrorType",
    "classify_error",
    "classify_exception",
    "is_conflict_error",
    "ErrorTracker",
    "ErrorSummary",
    "Deadline",
    "TimeoutConfig",
    "TimeoutMetricsTracker",
    "TimeoutResult",
    "calculate_progressive_timeout",
    "execute_with_timeout",
    "validate_timeout_config",
    "RecoveryStrategy",
    "RecoveryResult",
    "execute_with_recovery",
    "select_recovery_strategy",
    "find_last_successful_sync_point",
    "calculate_resume_parameters",
    "create_batch_recovery_plan",
    "create_multi_batch_recovery_plan",
    "OrganizationResolver",
    "OrganizationResolution",
    "ContactBatchProcessor",
    "BatchProgress",
    "SyncAbortedError",
    "RecordUpdateService",
    "UpdateResult",
    "BatchUpdateRequest",
    "BatchUpdateResult",
    "ActivityReplicationService",
    "SyncOrchestrator",
    "SyncRunOutcome",
    "run_sync",
]
