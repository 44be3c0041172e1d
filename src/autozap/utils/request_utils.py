from fastapi import Request
from fastapi.exceptions import HTTPException


def get_user_id(request: Request) -> str:
    """
    Tenant id forwarded by the authentication gateway in the x-user-id header
    """
    user_id = request.headers.get("x-user-id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id
