"""
Logging setup shared by the service core and the HTTP layer.
"""
import hashlib
import logging
from typing import Optional

from storefront.config import Config

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once for the process"""
    logging.basicConfig(
        level=(level or Config.LOG_LEVEL).upper(),
        format=LOG_FORMAT
    )


def hash_identifier(identifier: Optional[str]) -> Optional[str]:
    """Hash identifier for logging (no PII)"""
    if identifier is None:
        return None
    return hashlib.sha256(identifier.encode()).hexdigest()[:8]
