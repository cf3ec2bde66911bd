import os

# Must be set before config is imported anywhere, for tests/ and the unit tests in services/
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["VALKEY_HOST"] = ""
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ["VALID_TOKENS"] = "fake-client-token"
os.environ["ANALYTICS_FLUSH_INTERVAL"] = "0"
os.environ["LOG_FILE"] = ""
