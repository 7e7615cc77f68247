"""User endpoints.

Endpoints:
    POST /users: Register a user (development; production identities come
        from the authenticating layer)
    GET /users: Every other user, for starting a chat
    GET /users/me: The caller, including presence
"""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from courier.delivery.service import get_delivery_service
from courier.identity import current_user_id

from .schemas import UserCreate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])


@router.post("", status_code=201)
def create_user(body: UserCreate) -> JSONResponse:
    """Create a user.

    Returns:
        The created user (201 Created).
    """
    user = get_delivery_service().create_user(body.displayName, user_id=body.id)
    return JSONResponse(user.model_dump(mode="json"), status_code=201)


@router.get("")
def list_users(user_id: str = Depends(current_user_id)) -> JSONResponse:
    users = get_delivery_service().list_users(exclude_user_id=user_id)
    return JSONResponse([u.model_dump(mode="json") for u in users])


@router.get("/me")
def get_me(user_id: str = Depends(current_user_id)) -> JSONResponse:
    user = get_delivery_service().get_user(user_id)
    return JSONResponse(user.model_dump(mode="json"))
