"""Security utilities exposed for convenience."""

from .api_keys import Principal, generate_api_key, has_permission, require_principal
from .auth import (
    ensure_same_organization,
    get_current_token_payload,
    get_current_user,
    get_db_session,
    require_organization_member,
    require_role,
)
from .passwords import hash_password, verify_password
from .tokens import (
    JWTSettings,
    create_access_token,
    create_refresh_token,
    get_jwt_settings,
    reset_jwt_settings_cache,
    revoke_refresh_token,
    verify_refresh_token,
)

__all__ = [
    "JWTSettings",
    "Principal",
    "create_access_token",
    "create_refresh_token",
    "ensure_same_organization",
    "generate_api_key",
    "get_current_token_payload",
    "get_current_user",
    "get_db_session",
    "get_jwt_settings",
    "has_permission",
    "hash_password",
    "require_organization_member",
    "require_principal",
    "require_role",
    "reset_jwt_settings_cache",
    "revoke_refresh_token",
    "verify_password",
    "verify_refresh_token",
]
