# routers/auth.py — Authentication endpoints with refresh rotation
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, UserRegister, UserLogin, TokenResponse, RefreshRequest,
    PasswordChange, Principal, get_current_user, load_user, serialize_user,
)
from database import get_db_session
from services import record_audit, set_user_password, verify_password

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


@router.post("/register", response_model=TokenResponse, status_code=201)
async def register(
    user_data: UserRegister,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
):
    """Register a new user account"""
    user = await AuthService.register_user(user_data, db, request)
    tokens = AuthService.issue_tokens(user)
    await db.commit()
    return tokens


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive tokens"""
    user = await AuthService.authenticate_user(
        credentials.email, credentials.password, db, request
    )
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    tokens = AuthService.issue_tokens(user)
    await db.commit()
    return tokens


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    refresh_req: RefreshRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Exchange a refresh token for a new token pair; the old refresh token stops working"""
    payload = AuthService.verify_token(refresh_req.refresh_token)

    if payload.get("type") != "refresh":
        raise HTTPException(status_code=401, detail="Invalid token type. Expected refresh token.")

    user = await load_user(db, payload.get("sub") or "")
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")

    if not user.refresh_token or user.refresh_token != payload.get("jti"):
        raise HTTPException(status_code=401, detail="Refresh token has been revoked")

    tokens = AuthService.issue_tokens(user)
    await db.commit()
    return tokens


@router.post("/logout")
async def logout(
    request: Request,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Logout and revoke the outstanding refresh token"""
    user_obj = await load_user(db, user.id)
    user_obj.refresh_token = None
    record_audit(db, user, "USER_LOGOUT", "user", user.id, request=request)
    await db.commit()

    return {"status": "logged_out", "message": "Session terminated"}


@router.get("/me")
async def get_current_user_info(
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Get current authenticated user information"""
    user_obj = await load_user(db, user.id)
    return {
        **serialize_user(user_obj),
        "permissions": sorted(user.permissions),
    }


@router.post("/change-password")
async def change_password(
    password_data: PasswordChange,
    request: Request,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Change current user's password"""
    user_obj = await load_user(db, user.id)
    if not user_obj:
        raise HTTPException(status_code=404, detail="User not found")

    if not verify_password(password_data.current_password, user_obj.password):
        raise HTTPException(status_code=401, detail="Current password is incorrect")

    set_user_password(user_obj, password_data.new_password)
    user_obj.refresh_token = None
    record_audit(db, user, "PASSWORD_CHANGE", "user", user.id, request=request)
    await db.commit()

    return {"status": "password_changed", "message": "Password updated successfully"}
