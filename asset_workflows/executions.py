"""
Workflow Execution Log

Records one row per initialize or transition call, successful or not, with
its wall-clock duration. The rows back the per-organization analytics
(success and failure counts, average execution time, recent executions).

Writing a log row never fails the operation it describes: a storage error
here is logged and dropped.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Any
import time
import uuid

from .storage import StorageInterface, StorageRecord
from .errors import WorkflowError
from .logging_config import get_logger, log_action


EXECUTIONS_TABLE = "workflow_execution_logs"

# Analytics look at this many of the most recent rows
ANALYTICS_WINDOW = 100


@dataclass
class ExecutionLog(StorageRecord):
    """Outcome and duration of one engine operation"""
    action_type: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    workflow_state_id: Optional[str] = None
    step_id: Optional[str] = None
    organization_id: Optional[str] = None
    performed_by: Optional[str] = None
    correlation_id: Optional[str] = None
    success: bool = True
    execution_time_ms: float = 0.0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionContext:
    """Filled in by the tracked operation as it learns about its target"""
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    workflow_state_id: Optional[str] = None
    step_id: Optional[str] = None
    organization_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ExecutionLogger:
    """Writes and queries workflow execution logs"""

    def __init__(self, storage: StorageInterface,
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger("assetflow.executions")

    @contextmanager
    def track(self, action_type: str, performed_by: Optional[str] = None,
              correlation_id: Optional[str] = None, **context):
        """
        Time the wrapped block and log its outcome.

        Yields an ExecutionContext the block may update (state id, step,
        organization) so the row describes what was actually touched.
        Exceptions are logged as failures and re-raised.
        """
        ctx = ExecutionContext(**context)
        start = time.perf_counter()
        try:
            yield ctx
        except Exception as e:
            self._write(action_type, ctx, performed_by, correlation_id, start, error=e)
            raise
        self._write(action_type, ctx, performed_by, correlation_id, start)

    def _write(self, action_type: str, ctx: ExecutionContext, performed_by: Optional[str],
               correlation_id: Optional[str], start: float,
               error: Optional[Exception] = None) -> None:
        now = self.clock()
        entry = ExecutionLog(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            action_type=action_type,
            entity_type=ctx.entity_type,
            entity_id=ctx.entity_id,
            workflow_state_id=ctx.workflow_state_id,
            step_id=ctx.step_id,
            organization_id=ctx.organization_id,
            performed_by=performed_by,
            correlation_id=correlation_id,
            success=error is None,
            execution_time_ms=round((time.perf_counter() - start) * 1000, 3),
            error_code=error.code if isinstance(error, WorkflowError) else (
                type(error).__name__ if error is not None else None),
            error_message=str(error) if error is not None else None,
            metadata=dict(ctx.metadata)
        )
        try:
            self.storage.insert(EXECUTIONS_TABLE, entry.id, entry.to_dict())
        except Exception as e:
            log_action(self.logger, "error", f"Failed to write execution log: {e}",
                       user_id=performed_by, action=action_type, resource=ctx.entity_type,
                       entity_id=ctx.entity_id, correlation_id=correlation_id)

    def get_logs(self, organization_id: Optional[str] = None,
                 limit: Optional[int] = None) -> List[ExecutionLog]:
        """Execution logs, newest first"""
        filters = {'organization_id': organization_id} if organization_id is not None else {}
        rows = self.storage.find(EXECUTIONS_TABLE, filters)
        rows.sort(key=lambda r: r['created_at'], reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return [ExecutionLog.from_dict(row) for row in rows]

    def get_analytics(self, organization_id: str, recent: int = 10) -> Dict[str, Any]:
        """Performance summary over the most recent executions of an organization"""
        logs = self.get_logs(organization_id, limit=ANALYTICS_WINDOW)
        total = len(logs)
        successful = sum(1 for log in logs if log.success)
        average = sum(log.execution_time_ms for log in logs) / total if total else 0.0
        return {
            'organization_id': organization_id,
            'total_executions': total,
            'successful_executions': successful,
            'failed_executions': total - successful,
            'avg_execution_time_ms': round(average),
            'recent_logs': [log.to_dict() for log in logs[:recent]]
        }
