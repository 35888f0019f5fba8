# Import the service's flat modules (main, repo) against an in-memory SQLite database
import os
import sys
from pathlib import Path

import pytest

SERVICE_DIR = Path(__file__).resolve().parent.parent
os.environ.setdefault("DATABASE_URL", "sqlite://")
p = str(SERVICE_DIR)
if p not in sys.path:
    sys.path.insert(0, p)


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    import repo
    from main import app

    repo.Base.metadata.drop_all(repo.engine)
    with TestClient(app) as c:  # runs the startup hook, which creates the tables
        yield c
