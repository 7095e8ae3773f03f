"""API key generation and verification for event ingestion.

WHAT:
    Keys look like `qdk_<prefix>_<secret>`. The prefix is stored in clear
    and used to find the key record; only an HMAC-SHA256 of the secret is
    stored. Verification recomputes the HMAC and compares in constant time.

WHY:
    - A leaked database does not leak usable keys
    - Lookups stay indexed (by prefix) instead of hashing every stored key
    - Revoking a key is a timestamp, not a delete, so usage history survives

REFERENCES:
    - querydeck/models.py (ApiKey)
    - querydeck/routers/ingest.py (X-API-Key authentication)
"""

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from querydeck.models import ApiKey

logger = logging.getLogger(__name__)

KEY_PREFIX = "qdk"
DEFAULT_SALT = "development-salt"


@dataclass(frozen=True)
class GeneratedApiKey:
    plaintext: str
    prefix: str
    secret_hash: str


@dataclass(frozen=True)
class ParsedApiKey:
    prefix: str
    secret: str


def hash_api_secret(secret: str, salt: str = DEFAULT_SALT) -> str:
    """Hex HMAC-SHA256 of the secret part, keyed with the deployment salt."""
    return hmac.new(salt.encode("utf-8"), secret.encode("utf-8"), hashlib.sha256).hexdigest()


def generate_api_key(salt: str = DEFAULT_SALT) -> GeneratedApiKey:
    """Create a new random key. The plaintext is only ever returned here."""
    prefix = secrets.token_hex(4)
    secret = secrets.token_hex(24)
    return GeneratedApiKey(
        plaintext=f"{KEY_PREFIX}_{prefix}_{secret}",
        prefix=prefix,
        secret_hash=hash_api_secret(secret, salt),
    )


def parse_api_key(raw: str) -> Optional[ParsedApiKey]:
    """Split a presented key, or None if it is not in `qdk_<prefix>_<secret>` form."""
    parts = raw.strip().split("_")
    if len(parts) != 3 or parts[0] != KEY_PREFIX or not parts[1] or not parts[2]:
        return None
    return ParsedApiKey(prefix=parts[1], secret=parts[2])


def verify_api_key(raw: str, secret_hash: str, salt: str = DEFAULT_SALT) -> bool:
    parsed = parse_api_key(raw)
    if parsed is None:
        return False
    computed = hash_api_secret(parsed.secret, salt)
    return hmac.compare_digest(secret_hash.encode("utf-8"), computed.encode("utf-8"))


def create_api_key(db: Session, org_id: str, name: str, salt: str = DEFAULT_SALT) -> Tuple[ApiKey, str]:
    """Persist a new key for an organization. Returns (record, plaintext)."""
    generated = generate_api_key(salt)
    record = ApiKey(
        org_id=org_id,
        name=name,
        prefix=generated.prefix,
        secret_hash=generated.secret_hash,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info(f"[API_KEYS] Created key {record.prefix} for org {org_id}")
    return record, generated.plaintext


def authenticate_api_key(db: Session, raw: str, salt: str = DEFAULT_SALT) -> Optional[ApiKey]:
    """
    Resolve a presented key to its active record.

    Returns None for malformed, unknown, revoked or mismatching keys; the
    caller answers 401 in every case so callers cannot tell which it was.
    Stamps `last_used_at` on success.
    """
    parsed = parse_api_key(raw)
    if parsed is None:
        return None

    record = db.query(ApiKey).filter(ApiKey.prefix == parsed.prefix).first()
    if record is None or record.revoked_at is not None:
        return None

    if not verify_api_key(raw, record.secret_hash, salt):
        logger.warning(f"[API_KEYS] Secret mismatch for key {parsed.prefix}")
        return None

    record.last_used_at = datetime.utcnow()
    db.commit()
    return record
