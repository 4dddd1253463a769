from src.core.auth.service_account import (
    CachedToken,
    ServiceAccountCredential,
    ServiceAccountTokenIssuer,
    load_service_account_credential,
)
from src.core.auth.token_cache import AccessTokenCache

__all__ = [
    "AccessTokenCache",
    "CachedToken",
    "ServiceAccountCredential",
    "ServiceAccountTokenIssuer",
    "load_service_account_credential",
]
