from fastapi import status

from .errors import api_error

ROLE_RANK = {"viewer": 0, "operator": 1, "supervisor": 2, "admin": 3}


def require_role(user, minimum: str) -> None:
    """Raise 403 unless ``user`` holds ``minimum`` or a higher role."""

    if ROLE_RANK.get(getattr(user, "role", None), -1) < ROLE_RANK[minimum]:
        raise api_error(status.HTTP_403_FORBIDDEN, "auth.forbidden", f"Requires role {minimum}")
