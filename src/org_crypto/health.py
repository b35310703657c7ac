"""
Connected-account health derived from token decryptability.

A token that cannot be decrypted is marked failed and reported as
``action_needed``: the user must reconnect the account. A transient KMS
outage is ``degraded`` and the token is left untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import (
    CipherError,
    DekUnavailableError,
    KmsUnavailableError,
    TokenNotFoundError,
    TokenUnavailableError,
    error_code,
)
from .storage import EncryptionStatus, TokenType
from .tokens import TokenVault

logger = logging.getLogger(__name__)


class AccountStatus(str, Enum):
    CONNECTED = "connected"
    ACTION_NEEDED = "action_needed"
    DISCONNECTED = "disconnected"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class TokenHealth:
    """Health of one provider connection."""

    provider: str
    status: AccountStatus
    error_code: Optional[str] = None
    detail: Optional[str] = None

    @property
    def needs_reconnect(self) -> bool:
        return self.status in (AccountStatus.ACTION_NEEDED, AccountStatus.DISCONNECTED)


async def check_token_health(
    vault: TokenVault,
    org_id: str,
    provider: str,
    token_type: TokenType = TokenType.OAUTH_ACCESS,
) -> TokenHealth:
    """
    Probe a provider connection by decrypting its stored token.

    Args:
        vault: Token vault for the organization's tokens
        org_id: Organization id
        provider: Provider name (e.g. "google")
        token_type: Token to probe; the access token by default

    Returns:
        TokenHealth
    """
    try:
        await vault.retrieve_token(org_id, provider, token_type)
    except TokenNotFoundError:
        return TokenHealth(
            provider=provider,
            status=AccountStatus.DISCONNECTED,
            detail="No stored token",
        )
    except TokenUnavailableError as e:
        token = await vault.get_token(org_id, provider, token_type)
        code = token.kms_error_code if token is not None else None
        status = AccountStatus.ACTION_NEEDED
        if token is not None and token.encryption_status == EncryptionStatus.PENDING:
            status = AccountStatus.DEGRADED
        return TokenHealth(provider=provider, status=status, error_code=code, detail=str(e))
    except KmsUnavailableError as e:
        logger.warning(
            "KMS unavailable during health check (org=%s, provider=%s): %s",
            org_id,
            provider,
            e.code,
        )
        return TokenHealth(
            provider=provider,
            status=AccountStatus.DEGRADED,
            error_code=e.code,
            detail="Key service temporarily unavailable",
        )
    except (CipherError, DekUnavailableError) as e:
        await vault.mark_failed(org_id, provider, token_type, e)
        return TokenHealth(
            provider=provider,
            status=AccountStatus.ACTION_NEEDED,
            error_code=error_code(e),
            detail="Stored token cannot be decrypted; reconnect the account",
        )

    return TokenHealth(provider=provider, status=AccountStatus.CONNECTED)
