import os
import threading


class BackendSettings:
    _instance = None
    _lock = threading.Lock()

    def __init__(self):
        self.DATABASE_URL = os.environ.get("RLS_DATABASE_URL", "sqlite:///./rls_guard.db")
        self.POLICY_VERSION = os.environ.get("RLS_POLICY_VERSION", "1")
        self.SUBSCRIPTION_QUEUE_SIZE = int(os.environ.get("RLS_SUBSCRIPTION_QUEUE_SIZE", "0"))
        self.LOG_LEVEL = os.environ.get("RLS_LOG_LEVEL", "INFO").upper()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super(BackendSettings, cls).__new__(cls)
        return cls._instance


settings = BackendSettings()
