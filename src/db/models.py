"""SQLAlchemy ORM models for the data-export engine.

Tables:
- data_export_workflows: Approval workflows wrapping one or more export tasks
- data_export_workflow_steps: Ordered approval steps per workflow
- data_export_workflow_tasks: Workflow -> task links (ordered)
- data_export_tasks: Registered export tasks with audit verdicts and outcomes
- data_export_task_statements: Audited statements per task

Status columns hold the lowercase values of the enums in
src.data_export.config; the repository translates them.
"""

from sqlalchemy import (
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
from sqlalchemy.orm import relationship

from src.db.base import Base


class DataExportWorkflowRecord(Base):
    """Approval workflow for a data export."""

    __tablename__ = "data_export_workflows"

    uid = Column(String(64), primary_key=True)
    project_uid = Column(String(64), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    desc = Column(Text, default="")
    create_user_uid = Column(String(64), nullable=False, index=True)
    create_time = Column(DateTime, nullable=False)
    status = Column(String(32), nullable=False, index=True)
    current_step_number = Column(Integer)
    status_changed_at = Column(DateTime, nullable=False)
    version = Column(Integer, nullable=False, default=1)

    steps = relationship(
        "WorkflowStepRecord",
        back_populates="workflow",
        order_by="WorkflowStepRecord.number",
        cascade="all, delete-orphan",
    )
    task_links = relationship(
        "WorkflowTaskLinkRecord",
        back_populates="workflow",
        order_by="WorkflowTaskLinkRecord.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_data_export_workflows_status_changed", "status", "status_changed_at"),
        Index("ix_data_export_workflows_project_created", "project_uid", "create_time"),
    )


class WorkflowStepRecord(Base):
    """One approval step; the final step is the executor's."""

    __tablename__ = "data_export_workflow_steps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflow_uid = Column(
        String(64), ForeignKey("data_export_workflows.uid", ondelete="CASCADE"), nullable=False
    )
    number = Column(Integer, nullable=False)  # 1-based
    step_type = Column(String(32), nullable=False)
    assignees = Column(Text, nullable=False)  # JSON array of user uids
    state = Column(String(16), nullable=False, default="init")
    operation_user_uid = Column(String(64))
    operation_time = Column(DateTime)
    reason = Column(Text)

    workflow = relationship("DataExportWorkflowRecord", back_populates="steps")

    __table_args__ = (
        UniqueConstraint("workflow_uid", "number", name="uq_workflow_step_number"),
    )


class WorkflowTaskLinkRecord(Base):
    """Ordered association between a workflow and its tasks."""

    __tablename__ = "data_export_workflow_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflow_uid = Column(
        String(64), ForeignKey("data_export_workflows.uid", ondelete="CASCADE"), nullable=False
    )
    task_uid = Column(String(64), ForeignKey("data_export_tasks.uid"), nullable=False, index=True)
    position = Column(Integer, nullable=False)

    workflow = relationship("DataExportWorkflowRecord", back_populates="task_links")

    __table_args__ = (
        UniqueConstraint("workflow_uid", "task_uid", name="uq_workflow_task"),
    )


class DataExportTaskRecord(Base):
    """A registered export: one SQL batch against one database."""

    __tablename__ = "data_export_tasks"

    uid = Column(String(64), primary_key=True)
    project_uid = Column(String(64), nullable=False, index=True)
    create_user_uid = Column(String(64), nullable=False)
    db_service_uid = Column(String(64), nullable=False, index=True)
    database_name = Column(String(200), default="")
    export_sql = Column(Text, nullable=False)
    export_type = Column(String(16), nullable=False, default="sql")
    export_file_type = Column(String(16), nullable=False, default="csv")

    # Audit verdict
    audit_level = Column(String(16))
    audit_score = Column(Integer)
    audit_pass_rate = Column(Float)

    # Export outcome
    export_status = Column(String(16), nullable=False, default="init", index=True)
    export_start_time = Column(DateTime)
    export_end_time = Column(DateTime)
    export_file_name = Column(String(255))
    error_message = Column(Text)

    # Set while an active workflow holds the task
    claimed_by_workflow_uid = Column(String(64), index=True)
    create_time = Column(DateTime, nullable=False)

    statements = relationship(
        "DataExportStatementRecord",
        back_populates="task",
        order_by="DataExportStatementRecord.number",
        cascade="all, delete-orphan",
    )


class DataExportStatementRecord(Base):
    """Single audited statement of a task's SQL batch."""

    __tablename__ = "data_export_task_statements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_uid = Column(
        String(64), ForeignKey("data_export_tasks.uid", ondelete="CASCADE"), nullable=False
    )
    number = Column(Integer, nullable=False)  # 1-based, order in the batch
    sql = Column(Text, nullable=False)
    audit_level = Column(String(16))
    audit_results = Column(Text)  # JSON array of rule findings

    task = relationship("DataExportTaskRecord", back_populates="statements")

    __table_args__ = (
        UniqueConstraint("task_uid", "number", name="uq_task_statement_number"),
    )
