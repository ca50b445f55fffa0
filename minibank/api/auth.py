"""
Authentication and authorization dependencies
"""

from datetime import datetime, timezone, timedelta
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..storage import create_storage
from ..accounts import StorageAccountStore
from ..audit import StorageAuditLog
from ..ledger import LedgerEngine
from ..config import MinibankConfig, get_config


class LedgerSystem:
    """Ledger service with all components initialized"""

    def __init__(self, config: Optional[MinibankConfig] = None):
        self.config = config or get_config()

        self.storage = create_storage(
            self.config.database_url,
            busy_timeout=self.config.sqlite_busy_timeout
        )
        self.accounts = StorageAccountStore(self.storage)
        self.audit_log = StorageAuditLog(self.storage)
        self.engine = LedgerEngine(self.storage, self.accounts, self.audit_log)

    def close(self) -> None:
        self.storage.close()


_ledger_system: Optional[LedgerSystem] = None


def get_ledger_system() -> LedgerSystem:
    """Dependency returning the process-wide ledger system, created on first use"""
    global _ledger_system
    if _ledger_system is None:
        _ledger_system = LedgerSystem()
    return _ledger_system


# JWT Security
security = HTTPBearer(auto_error=False)


def create_access_token(account_id: str, config: Optional[MinibankConfig] = None) -> str:
    """Issue a bearer token scoped to one account"""
    config = config or get_config()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": account_id,
        "iat": now,
        "exp": now + timedelta(hours=config.jwt_expiry_hours),
    }
    return jwt.encode(payload, config.jwt_secret, algorithm=config.jwt_algorithm)


def decode_access_token(token: str, config: Optional[MinibankConfig] = None) -> Dict[str, Any]:
    """Validate a bearer token and return its claims"""
    config = config or get_config()
    return jwt.decode(token, config.jwt_secret, algorithms=[config.jwt_algorithm])


def require_account_owner(
    account_id: str,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: LedgerSystem = Depends(get_ledger_system)
) -> str:
    """Dependency that only lets a token for ``account_id`` through"""
    config = system.config
    if not config.auth_enabled:
        return account_id

    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = decode_access_token(credentials.credentials, config)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    if payload.get("sub") != account_id:
        raise HTTPException(status_code=403, detail="Permission denied")

    return account_id
