"""Pytest configuration and shared fixtures."""

import sys
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.data_export import (  # noqa: E402
    ApprovalStepPlan,
    AuditedStatement,
    AuditVerdict,
    DBServiceDescriptor,
    Expirer,
    InMemoryArtifactStore,
    NotificationDispatcher,
    QueryResult,
    TaskRegistry,
    WorkflowConfig,
    WorkflowEngine,
    WorkflowRepository,
)
from src.db import build_engine, get_sync_session_factory, init_db  # noqa: E402


PROJECT = "proj-1"
OTHER_PROJECT = "proj-2"
REACHABLE_DB = "db-ok"
UNREACHABLE_DB = "db-down"


# ── Fakes ────────────────────────────────────────────────────────────


class Clock:
    """Controllable naive-UTC clock."""

    def __init__(self, start: datetime = datetime(2026, 1, 5, 9, 0, 0)):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, **kwargs) -> datetime:
        with self._lock:
            self.now = self.now + timedelta(**kwargs)
            return self.now


class FakeAuditor:
    """Splits on ';' and passes every statement."""

    def __init__(self):
        self.error = None
        self.delay = 0.0
        self.calls = []

    def audit(self, sql, dialect):
        self.calls.append((sql, dialect))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        parts = [p.strip() for p in sql.split(";") if p.strip()]
        return AuditVerdict(
            level="normal",
            score=100,
            pass_rate=1.0,
            statements=[
                AuditedStatement(number=i, sql=p, level="normal", results=[])
                for i, p in enumerate(parts, start=1)
            ],
        )


class FakeResolver:
    def __init__(self, plan=None, admins=()):
        self.plan = plan if plan is not None else [("approve", ["alice"])]
        self.admins = set(admins)
        self.resolve_calls = 0

    def resolve_approval_steps(self, project_uid, action_kind):
        self.resolve_calls += 1
        return [ApprovalStepPlan(step_type=t, assignee_uids=list(a)) for t, a in self.plan]

    def is_project_admin(self, project_uid, user_uid):
        return user_uid in self.admins


class FakeDirectory:
    def __init__(self):
        self.services = {
            uid: DBServiceDescriptor(uid=uid, name=uid, db_type="MySQL", host="10.0.0.1", port=3306)
            for uid in (REACHABLE_DB, UNREACHABLE_DB)
        }

    def get_db_service(self, db_service_uid):
        return self.services.get(db_service_uid)


class FakeConnector:
    """Returns two rows per statement; the unreachable service always fails."""

    def __init__(self):
        self.delay = 0.0
        self.calls = []
        self._lock = threading.Lock()

    def execute(self, descriptor, database_name, sql, timeout):
        with self._lock:
            self.calls.append((descriptor.uid, database_name, sql))
        if self.delay:
            time.sleep(self.delay)
        if descriptor.uid == UNREACHABLE_DB:
            raise ConnectionError(f"cannot connect to {descriptor.host}:{descriptor.port}")
        return QueryResult(columns=["id", "name"], rows=[(1, "ann"), (2, "bo")])


class RecordingNotifier:
    def __init__(self):
        self.messages = []
        self._lock = threading.Lock()

    def notify(self, subject, body, recipient_uids):
        with self._lock:
            self.messages.append((subject, body, list(recipient_uids)))


class FailingNotifier:
    def notify(self, subject, body, recipient_uids):
        raise RuntimeError("smtp down")


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path}/test.db")
    init_db(engine)
    yield get_sync_session_factory(engine)
    engine.dispose()


@pytest.fixture
def repository(session_factory):
    return WorkflowRepository(session_factory)


@pytest.fixture
def config():
    return WorkflowConfig(
        export_worker_pool_size=4,
        export_query_timeout_seconds=5.0,
        audit_timeout_seconds=2.0,
        commit_retry_delay_seconds=0.0,
    )


@pytest.fixture
def auditor():
    return FakeAuditor()


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def artifact_store():
    return InMemoryArtifactStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier):
    dispatcher = NotificationDispatcher([notifier], max_workers=1)
    yield dispatcher
    dispatcher.shutdown(wait=True)


@pytest.fixture
def registry(repository, auditor, directory, connector, artifact_store, resolver, config, clock):
    return TaskRegistry(
        repository,
        auditor,
        directory,
        connector,
        artifact_store,
        resolver,
        config=config,
        now_fn=clock,
    )


@pytest.fixture
def engine(repository, registry, resolver, dispatcher, config, clock):
    return WorkflowEngine(
        repository,
        registry,
        resolver,
        dispatcher=dispatcher,
        config=config,
        now_fn=clock,
    )


@pytest.fixture
def expirer(repository, registry, dispatcher, config, clock):
    return Expirer(repository, registry, dispatcher=dispatcher, config=config, now_fn=clock)


@pytest.fixture
def register(registry):
    """Register a task for the project; returns its uid."""

    def _register(db_service_uid=REACHABLE_DB, sql="select 1; select 2", requester="carol",
                  project_uid=PROJECT):
        return registry.register_task(
            db_service_uid, "sales", sql, requester, project_uid=project_uid
        )

    return _register
