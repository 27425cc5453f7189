from supabase import create_client, Client
from dotenv import load_dotenv
from typing import Optional
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Required credentials are missing. The app refuses to start."""
    pass


def get_env(*names: str) -> str:
    """First non-empty value among the given env vars (aliases), stripped."""
    for name in names:
        value = (os.environ.get(name) or "").strip()
        if value:
            return value
    return ""


def require_env(*names: str) -> str:
    value = get_env(*names)
    if not value:
        raise ConfigurationError(f"Missing {' / '.join(names)} environment variable")
    return value


class Database:
    """Holds the service-role Supabase client (auth admin + Postgres tables)."""
    client: Optional[Client] = None

    def connect(self) -> Client:
        url = require_env("SUPABASE_URL")
        key = require_env("SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_SECRET_KEY", "SUPABASE_SERVICE_KEY")
        try:
            self.client = create_client(url, key)
            logger.info("Connected to Supabase: %s", url)
        except Exception as e:
            logger.error(f"Failed to connect to Supabase: {e}")
            raise
        return self.client

    def get_client(self) -> Client:
        if self.client is None:
            raise ConfigurationError("Supabase client not initialized - call database.connect() first")
        return self.client

    def close(self):
        if self.client is not None:
            self.client = None
            logger.info("Supabase client released")


# Global database instance
database = Database()
