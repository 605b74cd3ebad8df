"""Ledger credential storage (tokens encrypted at rest)"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.models.ledger_credential import LedgerCredential
from app.utils.encryption import decrypt, encrypt

logger = logging.getLogger(__name__)
ledger_logger = logging.getLogger("ledger")


@dataclass(frozen=True)
class Credential:
    """Decrypted view of a stored credential"""
    backend: str
    access_token: str
    refresh_token: Optional[str]
    realm_id: Optional[str]
    expires_at: Optional[datetime]

    @property
    def expired(self) -> bool:
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= datetime.now(timezone.utc)


def get_credential(backend: str, db: Session) -> Optional[Credential]:
    """Load and decrypt the credential for a backend

    Raises:
        ValueError: If the stored tokens cannot be decrypted
    """
    row = db.query(LedgerCredential).filter(LedgerCredential.backend == backend).first()
    if row is None:
        return None
    return Credential(
        backend=row.backend,
        access_token=decrypt(row.access_token),
        refresh_token=decrypt(row.refresh_token) if row.refresh_token else None,
        realm_id=row.realm_id,
        expires_at=row.expires_at
    )


def save_credential(
    backend: str,
    access_token: str,
    db: Session,
    refresh_token: Optional[str] = None,
    realm_id: Optional[str] = None,
    expires_in: Optional[int] = None,
    refresh_expires_in: Optional[int] = None
) -> LedgerCredential:
    """Create or replace the credential for a backend"""
    now = datetime.now(timezone.utc)
    row = db.query(LedgerCredential).filter(LedgerCredential.backend == backend).first()
    if row is None:
        row = LedgerCredential(backend=backend)
        db.add(row)
    row.access_token = encrypt(access_token)
    # Refresh endpoints may omit the refresh token when it did not rotate
    if refresh_token:
        row.refresh_token = encrypt(refresh_token)
    if realm_id:
        row.realm_id = realm_id
    row.expires_at = now + timedelta(seconds=expires_in) if expires_in else None
    if refresh_expires_in:
        row.refresh_expires_at = now + timedelta(seconds=refresh_expires_in)
    db.commit()
    db.refresh(row)
    ledger_logger.info(f"Stored {backend} credential (realm {row.realm_id}, expires {row.expires_at})")
    return row
