# sentinel/utils/helpers.py
import base64
import hmac
import logging
import re
import secrets
import struct
import time
import uuid

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

log = logging.getLogger(__name__)

# -------- Base64 utilities --------
def b64u(data: bytes) -> str:
    """Base64url encode bytes to string."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()

def b64u_dec(s: str) -> bytes:
    """Base64url decode string to bytes."""
    pad = '=' * (-len(s) % 4)
    return base64.urlsafe_b64decode((s + pad).encode())

# -------- Time / ids --------
def now_ms() -> int:
    """Current timestamp in milliseconds."""
    return int(time.time() * 1000)

def new_id() -> str:
    return str(uuid.uuid4())

# -------- Credential digests --------
SCRYPT_PREFIX = "scrypt$"
_SCRYPT_N, _SCRYPT_R, _SCRYPT_P, _SCRYPT_LEN = 2 ** 14, 8, 1, 32

def legacy_digest(password: str) -> str:
    """
    32-bit string hash used by the original client store.

    NOT a password hash: unsalted, fast and trivially collidable. Kept so that
    existing stored accounts keep authenticating; use the "scrypt" scheme for
    anything real.
    """
    raw = password.encode("utf-16-le")
    h = 0
    for (unit,) in struct.iter_unpack("<H", raw):
        h = (h * 31 + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return format(h, "x")

def _scrypt(salt: bytes) -> Scrypt:
    return Scrypt(salt=salt, length=_SCRYPT_LEN, n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P)

def scrypt_digest(password: str) -> str:
    salt = secrets.token_bytes(16)
    key = _scrypt(salt).derive(password.encode("utf-8"))
    return f"{SCRYPT_PREFIX}{b64u(salt)}${b64u(key)}"

def make_digest(password: str, scheme: str) -> str:
    if scheme == "scrypt":
        return scrypt_digest(password)
    return legacy_digest(password)

def verify_digest(password: str, stored: str) -> bool:
    """Check a password against either stored digest form."""
    if stored.startswith(SCRYPT_PREFIX):
        try:
            salt_b64, key_b64 = stored[len(SCRYPT_PREFIX):].split("$", 1)
            _scrypt(b64u_dec(salt_b64)).verify(password.encode("utf-8"), b64u_dec(key_b64))
            return True
        except (ValueError, InvalidKey):
            return False
    return hmac.compare_digest(legacy_digest(password).encode(), stored.encode("utf-8"))

# -------- Encoded image blobs --------
_DATA_URL_RE = re.compile(r"^data:(image/[a-zA-Z0-9.+-]+);base64,")

def image_mime_type(blob: str) -> str:
    """Mime type of a data URL; bare base64 is assumed to be JPEG."""
    match = _DATA_URL_RE.match(blob)
    return match.group(1) if match else "image/jpeg"

def image_payload(blob: str) -> str:
    """Strip a data URL prefix, leaving the base64 body."""
    return blob.split(",", 1)[1] if _DATA_URL_RE.match(blob) else blob

def as_data_url(blob: str) -> str:
    return f"data:{image_mime_type(blob)};base64,{image_payload(blob)}"
