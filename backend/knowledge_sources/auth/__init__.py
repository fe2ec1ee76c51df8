from knowledge_sources.auth.token import TokenPayload, get_current_user, verify_token
from knowledge_sources.auth.rbac import require_role, RequireStudent, RequireInstructor
from knowledge_sources.auth.dependencies import CurrentUser, SourceServiceDep, TenantStorage

__all__ = [
    "TokenPayload", "get_current_user", "verify_token",
    "require_role", "RequireStudent", "RequireInstructor",
    "CurrentUser", "SourceServiceDep", "TenantStorage",
]
