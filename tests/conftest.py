import os
import tempfile

# Point storage at a throwaway database before deploygate.config is imported.
_TMP_DIR = tempfile.mkdtemp(prefix="deploygate-tests-")
os.environ["DEPLOYGATE_DB_PATH"] = os.path.join(_TMP_DIR, "deploygate.db")
os.environ["DEPLOYGATE_STORAGE_BACKEND"] = "sqlite"
os.environ.setdefault("DEPLOYGATE_LOG_FORMAT", "text")
os.environ.pop("DEPLOYGATE_JOB_AGENT_WEBHOOK_URL", None)

import pytest

from deploygate.config import DB_PATH
from deploygate.observability import internal_metrics
from deploygate.storage import reset_storage_backend
from deploygate.storage.schema import init_db


def pytest_configure(config):
    os.environ.setdefault("DEPLOYGATE_ROLE_MEMBERS", '{"sre": ["sre-1", "sre-2"], "release-managers": ["rm-1"]}')
    os.environ.setdefault("DEPLOYGATE_DISPATCH_MAX_ATTEMPTS", "3")


@pytest.fixture
def clean_db():
    if os.path.exists(DB_PATH):
        os.remove(DB_PATH)
    reset_storage_backend()
    init_db()
    internal_metrics.reset()
    yield
    if os.path.exists(DB_PATH):
        os.remove(DB_PATH)
