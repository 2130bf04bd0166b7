import os
import sys
import tempfile
from pathlib import Path

# Keep logs and the default database out of the user's real data directory.
os.environ.setdefault("FRANCGYM_DATA_DIR", tempfile.mkdtemp(prefix="francgym-tests-"))

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from services.errors import RemoteConnectivityError, RemoteRejectedError
from services.pending_ops_queue import PendingOpsQueue
from storage.db import open_database, session_factory_for


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "offline.db"


@pytest.fixture
def engine(db_path, tmp_path):
    engine, _ = open_database(db_path, backup_dir=tmp_path / "backups", backup_enabled=False)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return session_factory_for(engine)


@pytest.fixture
def queue(session_factory):
    return PendingOpsQueue(session_factory)


class FakeRemote:
    """Remote store double; ``script`` holds one outcome per call (None = success)."""

    def __init__(self, script=None, default=None):
        self.script = list(script or [])
        self.default = default
        self.calls = []
        self.hook = None

    async def apply(self, table, operation, data):
        self.calls.append((table, operation, dict(data)))
        if self.hook is not None:
            await self.hook(table, operation, data)
        outcome = self.script.pop(0) if self.script else self.default
        if isinstance(outcome, BaseException):
            raise outcome


@pytest.fixture
def remote():
    return FakeRemote()


def rejected(message="violates check constraint"):
    return RemoteRejectedError(message, status_code=400, code="23514")


def offline(message="connection refused"):
    return RemoteConnectivityError(message)
