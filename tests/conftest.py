import os
import sys
import tempfile
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

_TEST_DB_DIR = tempfile.mkdtemp(prefix="layout-tests-")
os.environ.setdefault("APP_DB_PATH", str(Path(_TEST_DB_DIR) / "app.db"))
os.environ.setdefault("FLASK_SECRET_KEY", "test-secret")
os.environ.pop("LAYOUT_STORE_URL", None)

import db  # noqa: E402

db.init_db()
