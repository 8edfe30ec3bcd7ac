"""Database package for the data-export engine."""

from src.db.base import Base
from src.db.engine import (
    SyncSessionLocal,
    build_engine,
    get_sync_engine,
    get_sync_session_factory,
    init_db,
)
from src.db.models import (
    DataExportStatementRecord,
    DataExportTaskRecord,
    DataExportWorkflowRecord,
    WorkflowStepRecord,
    WorkflowTaskLinkRecord,
)

__all__ = [
    "Base",
    "SyncSessionLocal",
    "build_engine",
    "get_sync_engine",
    "get_sync_session_factory",
    "init_db",
    "DataExportStatementRecord",
    "DataExportTaskRecord",
    "DataExportWorkflowRecord",
    "WorkflowStepRecord",
    "WorkflowTaskLinkRecord",
]
