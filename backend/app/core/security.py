"""Webhook signature verification and operator authentication"""
import hashlib
import hmac
import logging
import secrets
from typing import Iterable, Optional

from fastapi import Header, HTTPException, Request

from app.core.config import settings

security_logger = logging.getLogger("security")

SIGNATURE_PREFIX = "sha256="


def compute_btcpay_signature(raw_body: bytes, secret: str) -> str:
    """BTCPay signs the raw body with HMAC-SHA256 and sends 'sha256=<hex>'"""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_btcpay_signature(raw_body: bytes, signature: Optional[str], secrets_to_try: Iterable[str]) -> bool:
    """Constant-time check of a BTCPay-Sig header against each candidate secret"""
    if not signature:
        return False
    provided = signature.strip().lower().encode("utf-8")
    matched = False
    for secret in secrets_to_try:
        if not secret:
            continue
        expected = compute_btcpay_signature(raw_body, secret).encode("utf-8")
        # Keep comparing after a match so timing does not reveal which secret matched
        if hmac.compare_digest(provided, expected):
            matched = True
    return matched


def require_operator(
    request: Request,
    x_operator_key: Optional[str] = Header(None, alias="X-Operator-Key")
) -> None:
    """Dependency: require the operator API key when one is configured"""
    expected = settings.OPERATOR_API_KEY
    if not expected:
        return
    if not x_operator_key or not secrets.compare_digest(x_operator_key, expected):
        security_logger.warning(
            f"Operator authentication failed - "
            f"IP: {request.client.host if request.client else 'unknown'}, "
            f"Path: {request.url.path}"
        )
        raise HTTPException(401, "Operator authentication required")
