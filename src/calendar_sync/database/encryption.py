"""Encryption of OAuth tokens at rest.

Google access and refresh tokens are stored Fernet-encrypted in the `users`
table. The Fernet key is derived from the application secret with PBKDF2:

- Salt: `ENCRYPTION_SALT` (derived from `SECRET_KEY` when unset)
- Iterations: 480,000 (OWASP recommendation for PBKDF2-HMAC-SHA256)
- Key length: 32 bytes

## Usage

```python
from calendar_sync.database.encryption import get_cipher

cipher = get_cipher()
stored = cipher.encrypt("ya29.a0Af...")
token = cipher.decrypt(stored)
```
"""

from __future__ import annotations

import base64
import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from calendar_sync.config import get_settings

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 480_000


def derive_key(secret_key: str, salt: str) -> bytes:
    """Derive a urlsafe-base64 Fernet key from the secret and salt."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode("utf-8"),
        iterations=PBKDF2_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret_key.encode("utf-8")))


class TokenCipher:
    """Symmetric cipher for OAuth tokens.

    Empty and None values pass through unchanged so optional columns can be
    handled without special-casing at every call site.
    """

    def __init__(self, secret_key: str, salt: str):
        self._fernet = Fernet(derive_key(secret_key, salt))

    def encrypt(self, plaintext: str | None) -> str | None:
        if not plaintext:
            return plaintext
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str | None) -> str | None:
        """Decrypt a stored token.

        Raises:
            ValueError: If the value was not produced with the current key
        """
        if not ciphertext:
            return ciphertext
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            logger.error("Failed to decrypt token: invalid token or key")
            raise ValueError("Failed to decrypt token") from e


@lru_cache
def get_cipher() -> TokenCipher:
    """Get the process-wide cipher built from settings.

    Key derivation is slow, so the cipher is cached. Call
    `get_cipher.cache_clear()` when settings change (e.g., in tests).
    """
    settings = get_settings()
    return TokenCipher(settings.secret_key, settings.encryption_salt)
