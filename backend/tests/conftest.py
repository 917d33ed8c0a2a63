import os
import sys
import tempfile

# Point module-level stores at a scratch directory before anything imports config.
os.environ.setdefault("AUTOFIX_DATA_DIR", tempfile.mkdtemp(prefix="autofix-tests-"))
os.environ.pop("AUTOFIX_REMOTE_URL", None)
os.environ.pop("AUTOFIX_REMOTE_API_KEY", None)

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
