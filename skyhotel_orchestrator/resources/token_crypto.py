"""
Pool token decryption.

Stored pool tokens are base64 RSA-OAEP (SHA-256) ciphertexts. The private
key comes from configuration as PEM text, PEM with literal "\\n" escapes, or
base64-wrapped PEM.
"""
import base64
import binascii
import re
from typing import Optional

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=]+$")

_OAEP = padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None)


def resolve_pem(raw: Optional[str]) -> str:
    normalized = str(raw or "").replace("\\n", "\n").strip()
    if not normalized or "-----BEGIN" in normalized:
        return normalized

    compact = re.sub(r"\s+", "", normalized)
    if not _BASE64_RE.match(compact) or len(compact) % 4 != 0:
        return normalized
    try:
        decoded = base64.b64decode(compact).decode("utf-8").strip()
    except (binascii.Error, UnicodeDecodeError):
        return normalized
    return decoded if "-----BEGIN" in decoded else normalized


class PoolTokenCipher:
    """Decrypts (and, for provisioning, encrypts) pool tokens."""

    def __init__(self, private_key_pem: Optional[str]):
        self._pem = resolve_pem(private_key_pem)
        self._key = None

    def _private_key(self):
        if self._key is None:
            if not self._pem:
                raise ValueError("POOL_TOKEN_PRIVATE_KEY is missing")
            self._key = serialization.load_pem_private_key(self._pem.encode("utf-8"), password=None)
        return self._key

    def decrypt(self, cipher_text: Optional[str]) -> str:
        payload = str(cipher_text or "").strip()
        if not payload:
            return ""
        plain = self._private_key().decrypt(base64.b64decode(payload), _OAEP)
        return plain.decode("utf-8")

    def encrypt(self, plain_token: str) -> str:
        token = str(plain_token or "").strip()
        if not token:
            raise ValueError("token is required")
        cipher = self._private_key().public_key().encrypt(token.encode("utf-8"), _OAEP)
        return base64.b64encode(cipher).decode("ascii")

    __call__ = decrypt
