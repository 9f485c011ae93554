from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy.orm import Session, sessionmaker

from rolebatch.config import Settings
from rolebatch.database import build_session_factory
from rolebatch.executor import BatchExecutor
from rolebatch.pipeline import BulkRoleRunner
from support.fakes import FakeAuditSink, FakeNotifier, FakePolicyOracle, InMemoryRecordStore, make_subjects


@pytest.fixture()
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        app_name="rolebatch",
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        log_level="INFO",
        default_batch_size=100,
        max_items=10000,
        max_call_retries=1,
        retry_backoff_seconds=0,
        call_timeout_seconds=5,
        item_workers=1,
        sync_item_limit=500,
        seconds_per_item=0.1,
        expiry_sweep_minutes=15,
    )


@pytest.fixture()
def session_factory(test_settings: Settings) -> sessionmaker[Session]:
    return build_session_factory(test_settings.database_url)


@pytest.fixture()
def record_store() -> InMemoryRecordStore:
    return InMemoryRecordStore(make_subjects(5))


@pytest.fixture()
def policy_oracle() -> FakePolicyOracle:
    return FakePolicyOracle()


@pytest.fixture()
def audit_sink() -> FakeAuditSink:
    return FakeAuditSink()


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture()
def executor(test_settings, session_factory, record_store, policy_oracle, audit_sink) -> BatchExecutor:
    return BatchExecutor(
        test_settings,
        session_factory,
        record_store=record_store,
        policy_oracle=policy_oracle,
        audit_sink=audit_sink,
    )


@pytest.fixture()
def runner(
    test_settings, session_factory, record_store, policy_oracle, audit_sink, notifier
) -> Generator[BulkRoleRunner, None, None]:
    runner = BulkRoleRunner(
        test_settings,
        session_factory,
        record_store=record_store,
        policy_oracle=policy_oracle,
        audit_sink=audit_sink,
        notifier=notifier,
    )
    yield runner
    runner.close()
