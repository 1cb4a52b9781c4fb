"""Password hashing for local (email/password) accounts.

Uses the standard library's scrypt KDF. Stored format:

```
scrypt$<n>$<r>$<p>$<salt b64>$<hash b64>
```

Parameters are stored with each hash so they can be raised later without
invalidating existing accounts.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import secrets

SCHEME = "scrypt"
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1
SALT_BYTES = 16
KEY_BYTES = 64


def _scrypt(password: str, salt: bytes, n: int, r: int, p: int) -> bytes:
    return hashlib.scrypt(
        password.encode("utf-8"),
        salt=salt,
        n=n,
        r=r,
        p=p,
        dklen=KEY_BYTES,
        maxmem=128 * n * r * 2,
    )


def hash_password(password: str) -> str:
    """Hash a password for storage."""
    salt = secrets.token_bytes(SALT_BYTES)
    digest = _scrypt(password, salt, SCRYPT_N, SCRYPT_R, SCRYPT_P)
    return "$".join(
        [
            SCHEME,
            str(SCRYPT_N),
            str(SCRYPT_R),
            str(SCRYPT_P),
            base64.b64encode(salt).decode("ascii"),
            base64.b64encode(digest).decode("ascii"),
        ]
    )


def verify_password(password: str, stored_hash: str | None) -> bool:
    """Check a password against a stored hash.

    Returns False for accounts without a password (Google-only users) and
    for malformed hashes.
    """
    if not stored_hash:
        return False

    try:
        scheme, n, r, p, salt_b64, digest_b64 = stored_hash.split("$")
        if scheme != SCHEME:
            return False
        salt = base64.b64decode(salt_b64)
        expected = base64.b64decode(digest_b64)
        actual = _scrypt(password, salt, int(n), int(r), int(p))
    except ValueError:
        return False

    # Constant-time comparison
    return hmac.compare_digest(expected, actual)


async def hash_password_async(password: str) -> str:
    """Run ``hash_password`` in a worker thread."""
    return await asyncio.to_thread(hash_password, password)


async def verify_password_async(password: str, stored_hash: str | None) -> bool:
    return await asyncio.to_thread(verify_password, password, stored_hash)
