from fastapi import Header, HTTPException, status
from src.auth.context import SuperAdminContext
from src.auth.jwt import decode_super_admin_token
from src.db import supabase
from src.domain.signatures import extract_bearer_token


async def get_current_super_admin(authorization: str | None = Header(None)) -> SuperAdminContext:
    """
    Operator JWT auth. Validates token type is 'super_admin' and the account exists in super_admins.
    """
    token = extract_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
        )

    payload = decode_super_admin_token(token)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired super-admin token",
        )

    result = supabase.table("super_admins").select("id, email").eq(
        "id", payload["sub"]
    ).execute()

    if not result.data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Super-admin not found",
        )

    super_admin = result.data[0]
    return SuperAdminContext(
        super_admin_id=super_admin["id"],
        email=super_admin["email"],
    )
