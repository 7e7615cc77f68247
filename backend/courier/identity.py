"""Trusted caller identity for HTTP endpoints.

Authentication happens in front of this service; the outer layer forwards
the authenticated user id in the ``X-User-Id`` header. The id is only
checked against the user table, never verified.
"""
from typing import Optional

from fastapi import Header

from courier.delivery.errors import Unauthorized
from courier.delivery.service import get_delivery_service

USER_ID_HEADER = "X-User-Id"


def current_user_id(
    x_user_id: Optional[str] = Header(None, alias=USER_ID_HEADER),
) -> str:
    """FastAPI dependency resolving the caller's user id.

    Raises:
        Unauthorized: The header is missing or names an unknown user.
    """
    if not x_user_id:
        raise Unauthorized(f"{USER_ID_HEADER} header is required")
    if get_delivery_service().store.get_user(x_user_id) is None:
        raise Unauthorized(f"Unknown user: {x_user_id}")
    return x_user_id
