"""Database helper functions for service-wide key/value state"""
from sqlalchemy.orm import Session
from typing import Optional
import logging

from app.models.system_setting import SystemSetting
from app.db.session import SessionLocal

logger = logging.getLogger(__name__)

# System setting keys
LEDGER_AUTH_STATE_KEY = "ledger_auth_state"
LEDGER_AUTH_REASON_KEY = "ledger_auth_reason"
SWEEP_CURSOR_KEY = "fallback_sweep_cursor"


def get_system_setting(key: str, default: Optional[str] = None, db: Session = None) -> Optional[str]:
    """Read a system setting

    Args:
        key: Setting key
        default: Returned when the key has never been written
        db: Database session (if None, creates its own)
    """
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        setting = db.query(SystemSetting).filter(SystemSetting.key == key).first()
        return setting.value if setting else default
    finally:
        if should_close:
            db.close()


def set_system_setting(key: str, value: str, db: Session = None) -> None:
    """Set a system setting (creates or updates)"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        setting = db.query(SystemSetting).filter(SystemSetting.key == key).first()
        if setting:
            setting.value = value
        else:
            db.add(SystemSetting(key=key, value=value))
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        if should_close:
            db.close()
