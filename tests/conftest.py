"""Root conftest: pins env vars BEFORE any callbot module reads them.

Config falls back to the environment for every option, so real CALLBOT_*
variables (or a developer's ~/.callbot/.env) must not leak into tests.
"""

import os
import tempfile

# Force-set (not setdefault) to prevent real env vars from leaking into tests
os.environ["TELEGRAM_BOT_TOKEN"] = "test:0000000000:AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
os.environ["CALLBOT_DIR"] = tempfile.mkdtemp(prefix="callbot-test-")
for _name in list(os.environ):
    if _name.startswith("CALLBOT_") and _name != "CALLBOT_DIR":
        del os.environ[_name]
