"""
Pytest configuration and fixtures for contest-engine tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from pathlib import Path

    # Cleanup lock file before test (prevents "instance already running" errors)
    lock_file = Path("data/contest-engine.pid")
    if lock_file.exists():
        lock_file.unlink()

    from infra.metrics import MetricsRecorder
    MetricsRecorder._reset_for_testing()

    yield

    MetricsRecorder._reset_for_testing()

    if lock_file.exists():
        lock_file.unlink()


@pytest.fixture
def clock():
    from tests.helpers import FakeClock
    return FakeClock()


@pytest.fixture
def store(clock):
    from tests.helpers import make_store
    return make_store(clock)


@pytest.fixture
def audit(tmp_path):
    from core.audit_log import SettlementAuditLog
    return SettlementAuditLog(str(tmp_path / "audit.jsonl"))
