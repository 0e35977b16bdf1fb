import os
import tempfile
from pathlib import Path

# Must be set before app.config is imported.
os.environ.setdefault('DISPATCH_DB_PATH', str(Path(tempfile.mkdtemp()) / 'dispatch-test.db'))
