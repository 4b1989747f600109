"""Global pytest environment isolation for AgentRoom.

Points every runtime path at a throwaway directory before the package is
imported, so tests never touch a developer's real data.
"""

from __future__ import annotations

import atexit
import asyncio
import os
import shutil
import tempfile
from pathlib import Path

TEST_ROOT = Path(tempfile.mkdtemp(prefix="agentroom-tests-")).resolve()
TEST_HOME = TEST_ROOT / "home"
TEST_DB = TEST_HOME / "data" / "agentroom-test.db"

os.environ["AGENTROOM_HOME"] = str(TEST_HOME)
os.environ["AGENTROOM_DB_PATH"] = str(TEST_DB)
os.environ["AGENTROOM_LOGS_DIR"] = str(TEST_HOME / "logs")
os.environ["AGENTROOM_MODEL_BASE_URL"] = "http://model.test/v1"
os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("SEARXNG_URL", None)
os.environ.pop("TAVILY_API_KEY", None)

TEST_DB.parent.mkdir(parents=True, exist_ok=True)


def _assert_test_isolation() -> None:
    from agentroom.runtime_config import DB_PATH

    if TEST_ROOT not in Path(DB_PATH).resolve().parents:
        raise RuntimeError(f"AGENTROOM_DB_PATH escaped test root: {DB_PATH}")


def _bootstrap_test_runtime() -> None:
    _assert_test_isolation()
    from agentroom.database import init_db

    asyncio.run(init_db())


_bootstrap_test_runtime()


def _cleanup_test_dirs():
    shutil.rmtree(TEST_ROOT, ignore_errors=True)


atexit.register(_cleanup_test_dirs)
