# sitefleet/utils/security.py
import hashlib
import hmac
import logging
import secrets

from cryptography.fernet import Fernet

logger = logging.getLogger(__name__)


class CredentialCipher:
    """
    Fernet wrapper for device passwords at rest.
    Without a key, values pass through in clear (development only).
    """

    def __init__(self, key: str | None, app_env: str = "development"):
        self._fernet = None
        if not key:
            if app_env == "production":
                raise RuntimeError(
                    "FATAL: ENCRYPTION_KEY is not set. It is mandatory in production "
                    "to encrypt controller credentials."
                )
            logger.warning("ENCRYPTION_KEY is not set. Credential encryption is DISABLED.")
            return
        try:
            self._fernet = Fernet(key.encode())
        except Exception as e:
            if app_env == "production":
                raise RuntimeError(
                    f"FATAL: invalid ENCRYPTION_KEY: {e}. Generate one with: "
                    'python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"'
                )
            logger.error(f"Could not initialize Fernet with ENCRYPTION_KEY: {e}")

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, data: str) -> str:
        if not self._fernet or not data:
            return data
        return self._fernet.encrypt(data.encode()).decode()

    def decrypt(self, token: str) -> str:
        if not self._fernet or not token:
            return token
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except Exception:
            # Rows written before a key was configured are stored in clear
            logger.warning("Could not decrypt a stored credential. Assuming legacy plain text.")
            return token


def generate_site_token() -> str:
    """High-entropy opaque bearer secret for site management."""
    return f"SITE-{secrets.token_hex(32).upper()}"


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def digests_match(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
