import os
import tempfile

# The app opens its database at import time; keep it out of the user's data dir.
_TMP = tempfile.mkdtemp(prefix="pacurhoja-tests-")
os.environ.setdefault("XDG_DATA_HOME", _TMP)
os.environ.setdefault("PACUR_DB_PATH", os.path.join(_TMP, "pacurhoja.db"))

import pytest

from pacurhoja.storage import DatabaseManager, SheetRepository


@pytest.fixture
def repo(tmp_path) -> SheetRepository:
    db = DatabaseManager(str(tmp_path / "sheets.db"))
    db.initialize_schema()
    return SheetRepository(db)
