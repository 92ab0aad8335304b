import json
import os
import sys

import pytest


# Tests import `backend.*`, which requires the repo root on sys.path
# whether pytest runs from the repo root or from within `backend/`.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)


@pytest.fixture
def log_events(capsys):
    """Parsed `json_log` records written to stderr so far."""
    def _read():
        return [json.loads(line) for line in capsys.readouterr().err.splitlines() if line.startswith("{")]
    return _read
