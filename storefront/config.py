"""
Configuration management for the storefront cart service.
Loads settings from environment variables and AWS Secrets Manager.
"""
import os
import json
import logging
import boto3
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")

def _get_timeout(name: str, default: str) -> Optional[float]:
    value = float(os.getenv(name, default))
    # 0 disables the timeout
    return value if value > 0 else None

class Config:
    """Application configuration"""

    # Application settings
    APP_PORT: int = int(os.getenv("APP_PORT", "8000"))
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "storefront")
    REGION: str = os.getenv("REGION", "ap-southeast-2")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Redis settings
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_AUTH_TOKEN: Optional[str] = os.getenv("REDIS_AUTH_TOKEN")
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_SSL: bool = _get_bool("REDIS_SSL", False)

    # Cart settings
    CART_TTL_SECONDS: int = int(os.getenv("CART_TTL_SECONDS", str(30 * 24 * 60 * 60)))  # 30 days default
    MAX_ITEMS_PER_CART: int = int(os.getenv("MAX_ITEMS_PER_CART", "200"))
    MAX_QUANTITY_PER_ITEM: int = int(os.getenv("MAX_QUANTITY_PER_ITEM", "99"))
    LOCAL_CART_KEY: str = os.getenv("LOCAL_CART_KEY", "storefront-cart")
    LOCAL_STORAGE_DIR: str = os.getenv("LOCAL_STORAGE_DIR", ".storefront/sessions")
    CATALOG_SOURCE: str = os.getenv("CATALOG_SOURCE", "static")  # 'static' or 'redis'

    # Session settings
    SESSION_IDLE_SECONDS: int = int(os.getenv("SESSION_IDLE_SECONDS", str(60 * 60)))  # 1 hour default
    MAX_SESSIONS: int = int(os.getenv("MAX_SESSIONS", "10000"))

    # Reconciliation settings
    REMOTE_TIMEOUT_SECONDS: Optional[float] = _get_timeout("REMOTE_TIMEOUT_SECONDS", "5")
    CHECKOUT_RETAIN_FAILED_LINES: bool = _get_bool("CHECKOUT_RETAIN_FAILED_LINES", True)
    MERGE_ON_LOGIN: str = os.getenv("MERGE_ON_LOGIN", "discard")

    # Redis connection settings
    REDIS_SOCKET_CONNECT_TIMEOUT: int = 5
    REDIS_SOCKET_TIMEOUT: int = 5
    REDIS_RETRY_ON_TIMEOUT: bool = True
    REDIS_MAX_CONNECTIONS: int = 50

    @classmethod
    def redis_url(cls) -> str:
        """Build the Redis URL, using rediss:// when TLS is enabled"""
        scheme = "rediss" if cls.REDIS_SSL else "redis"
        auth = f":{cls.REDIS_AUTH_TOKEN}@" if cls.REDIS_AUTH_TOKEN else ""
        return f"{scheme}://{auth}{cls.REDIS_HOST}:{cls.REDIS_PORT}/{cls.REDIS_DB}"

    @classmethod
    def load_redis_secrets(cls) -> None:
        """Fill in the Redis token and endpoint from AWS Secrets Manager, if configured"""
        secret_name = os.getenv("REDIS_SECRET_NAME")
        if cls.REDIS_AUTH_TOKEN or not secret_name:
            return

        secret = _fetch_secret(secret_name, cls.REGION)
        if secret is None:
            return
        cls.REDIS_AUTH_TOKEN = secret.get("auth_token")
        cls.REDIS_HOST = secret.get("endpoint", cls.REDIS_HOST)

def _fetch_secret(secret_name: str, region: str) -> Optional[Dict[str, Any]]:
    try:
        client = boto3.client("secretsmanager", region_name=region)
        response = client.get_secret_value(SecretId=secret_name)
        return json.loads(response["SecretString"])
    except Exception as e:
        # Startup continues without credentials; the first Redis call will report it
        logger.warning(f"Could not load Redis secrets from Secrets Manager: {e}")
        return None


# Load secrets at module import
Config.load_redis_secrets()
