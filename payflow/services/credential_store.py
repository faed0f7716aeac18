"""At-rest obfuscation for tenant gateway credentials.

Secrets are XORed with a SHA-256 digest of ``settings.secret_key`` and
base64 encoded. This keeps API keys out of plain sight in dumps and logs
but is not encryption: the keystream repeats every 32 bytes, there is no
nonce and no integrity check, so anyone holding two ciphertexts or one
known plaintext can recover the key. Production deployments holding live
gateway keys should swap these two functions for a KMS or an authenticated
cipher such as Fernet.
"""

import base64
import hashlib
import json

from payflow.core.config import settings


def _cipher_key() -> bytes:
    return hashlib.sha256(settings.secret_key.encode("utf-8")).digest()


def encrypt_secret(plain_text: str) -> str:
    key = _cipher_key()
    raw = plain_text.encode("utf-8")
    encrypted = bytes(value ^ key[idx % len(key)] for idx, value in enumerate(raw))
    return base64.urlsafe_b64encode(encrypted).decode("ascii")


def decrypt_secret(cipher_text: str) -> str:
    key = _cipher_key()
    encrypted = base64.urlsafe_b64decode(cipher_text.encode("ascii"))
    raw = bytes(value ^ key[idx % len(key)] for idx, value in enumerate(encrypted))
    return raw.decode("utf-8")


def encrypt_credentials(credentials: dict[str, str]) -> str:
    return encrypt_secret(json.dumps(credentials, sort_keys=True))


def decrypt_credentials(cipher_text: str | None) -> dict[str, str]:
    """Decrypt a tenant's gateway credential bundle.

    The result is handed straight to one provider instance and must not be
    cached anywhere else.
    """
    if not cipher_text:
        return {}
    parsed = json.loads(decrypt_secret(cipher_text))
    if not isinstance(parsed, dict):
        raise ValueError("Gateway credentials must decode to a JSON object")
    return {str(key): str(value) for key, value in parsed.items() if value is not None}
