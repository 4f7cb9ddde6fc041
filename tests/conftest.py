# ABOUTME: Pytest hooks and shared fixtures. Sets SECRET_KEY and a throwaway DB path before app/config load.
# ABOUTME: API tests patch get_session onto an in-memory engine, so the default DB is never touched.

import os

# Required by core.config before any test imports api.main.
os.environ.setdefault("SECRET_KEY", "test-secret-for-pytest")
os.environ.setdefault("GOALS_DB_PATH", ":memory:")
