# auth.py — Authentication & access control for Scrum PM
# Features:
# - JWT access/refresh tokens with JTI (refresh rotation + revocation)
# - Resolved principal: roles and effective permissions computed once per request
# - Global roles (super_admin, admin, project_owner, team_member, viewer)
# - Project-scoped membership roles layered on top
# - Password policy enforcement (upper, lower, digit, special, min 8)
# - Brute force protection

import os
import re
import uuid
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, Tuple, FrozenSet
from collections import defaultdict

from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, ConfigDict, EmailStr, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from guards import (
    RouteDescriptor, NotAuthenticated, InsufficientPermissions,
    check_authenticated, check_permissions, evaluate,
)
from logging_system import get_logger
from models import User, Project, ProjectMember, ProjectVisibility, GlobalRole, utcnow
from permissions import P, permissions_for, effective_project_permissions
from services import create_user, verify_password, record_audit

logger = get_logger("auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY or SECRET_KEY == "change-this-to-a-secure-random-key-in-production":
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warn(
        "JWT_SECRET_KEY not set or insecure. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))
MIN_PASSWORD_LENGTH = 8
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15

SPECIAL_CHARACTERS = re.compile(r'[!@#$%^&*(),.?":{}|<>]')

security = HTTPBearer(auto_error=False)

# In-memory brute force tracker (use Redis in production)
_login_attempts: Dict[str, list] = defaultdict(list)


def reset_login_attempts() -> None:
    _login_attempts.clear()


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

def validate_password_strength(v: str) -> str:
    if len(v) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if not any(c.isupper() for c in v):
        raise ValueError("Password must contain at least one uppercase letter")
    if not any(c.islower() for c in v):
        raise ValueError("Password must contain at least one lowercase letter")
    if not any(c.isdigit() for c in v):
        raise ValueError("Password must contain at least one digit")
    if not SPECIAL_CHARACTERS.search(v):
        raise ValueError("Password must contain at least one special character")
    return v


def validate_person_name(v: str) -> str:
    v = v.strip()
    if not 2 <= len(v) <= 50:
        raise ValueError("Name must be between 2 and 50 characters")
    return v


class UserRegister(BaseModel):
    email: EmailStr
    password: str
    first_name: str
    last_name: str

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_strength(v)

    @field_validator("first_name", "last_name")
    @classmethod
    def validate_names(cls, v: str) -> str:
        return validate_person_name(v)


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class RefreshRequest(BaseModel):
    refresh_token: str


class PasswordChange(BaseModel):
    current_password: str
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_strength(v)


class Principal(BaseModel):
    """The resolved caller: identity plus roles and effective permissions."""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    email: Optional[str] = None
    full_name: str = ""
    authenticated: bool = False
    is_active: bool = False
    roles: Tuple[str, ...] = ()
    permissions: FrozenSet[str] = frozenset()
    project_id: Optional[str] = None
    project_role: Optional[str] = None

    @classmethod
    def anonymous(cls) -> "Principal":
        return cls()

    def has_role(self, role: str) -> bool:
        return getattr(role, "value", role) in self.roles

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions

    def with_project(self, project_id: str, membership: Optional[ProjectMember]) -> "Principal":
        return self.model_copy(update={
            "permissions": effective_project_permissions(self.permissions, membership),
            "project_id": project_id,
            "project_role": membership.role.value if membership is not None and membership.is_active else None,
        })


def resolve_principal(user: User) -> Principal:
    """Assemble roles and permissions once; later checks are pure lookups."""
    active_roles = [role for role in user.roles or [] if role.is_active]
    role_names = tuple(sorted(role.name for role in active_roles))
    granted = set(permissions_for(role_names))
    for role in active_roles:
        granted.update(perm.name for perm in role.permissions or [])
    return Principal(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        authenticated=True,
        is_active=bool(user.is_active),
        roles=role_names,
        permissions=frozenset(granted),
    )


def serialize_user(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "full_name": user.full_name,
        "avatar": user.avatar,
        "is_active": user.is_active,
        "email_verified": user.email_verified,
        "roles": sorted(role.name for role in user.roles or []),
        "preferences": user.preferences,
        "last_login": user.last_login.isoformat() if user.last_login else None,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Token issuing, credential checks and registration"""

    @staticmethod
    def _create_token(data: Dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + expires_delta,
            "iat": now,
            "type": token_type,
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        delta = expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        return AuthService._create_token(data, "access", delta)

    @staticmethod
    def create_refresh_token(data: Dict[str, Any]) -> str:
        return AuthService._create_token(data, "refresh", timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except JWTError:
            raise HTTPException(status_code=401, detail="Invalid token")

    @staticmethod
    def issue_tokens(user: User) -> TokenResponse:
        """Issue an access/refresh pair; the refresh JTI is stored so older refresh tokens stop working."""
        claims = {"sub": user.id, "email": user.email}
        access_token = AuthService.create_access_token(claims)
        refresh_token = AuthService.create_refresh_token(claims)
        user.refresh_token = jwt.get_unverified_claims(refresh_token)["jti"]
        return TokenResponse(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            user=serialize_user(user),
        )

    @staticmethod
    def _check_brute_force(email: str) -> None:
        """Check if login attempts exceed threshold"""
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=LOGIN_LOCKOUT_MINUTES)
        _login_attempts[email] = [t for t in _login_attempts[email] if t > cutoff]
        if len(_login_attempts[email]) >= MAX_LOGIN_ATTEMPTS:
            logger.security_event("login_lockout", email=email)
            raise HTTPException(
                status_code=429,
                detail=f"Too many login attempts. Try again in {LOGIN_LOCKOUT_MINUTES} minutes.",
            )

    @staticmethod
    def _record_failed_attempt(email: str) -> None:
        _login_attempts[email].append(datetime.now(timezone.utc))

    @staticmethod
    def _clear_attempts(email: str) -> None:
        _login_attempts.pop(email, None)

    @staticmethod
    async def register_user(user_data: UserRegister, db: AsyncSession, request: Optional[Request] = None) -> User:
        user = await create_user(
            db,
            email=user_data.email,
            password=user_data.password,
            first_name=user_data.first_name,
            last_name=user_data.last_name,
            roles=(GlobalRole.TEAM_MEMBER,),
        )
        record_audit(db, user, "USER_REGISTER", "user", user.id, request=request)
        await db.commit()
        return user

    @staticmethod
    async def authenticate_user(email: str, password: str, db: AsyncSession, request: Optional[Request] = None) -> Optional[User]:
        AuthService._check_brute_force(email)

        result = await db.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()

        if not user or not verify_password(password, user.password):
            AuthService._record_failed_attempt(email)
            logger.security_event("login_failed", email=email)
            return None

        if not user.is_active:
            return None

        AuthService._clear_attempts(email)
        user.last_login = utcnow()
        record_audit(db, user, "USER_LOGIN", "user", user.id, request=request)
        return user


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

def attempted_url(request: Request) -> str:
    query = request.url.query
    return f"{request.url.path}?{query}" if query else request.url.path


async def load_user(db: AsyncSession, user_id: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_optional_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> Optional[Principal]:
    """Principal for the bearer token, or None when no token was sent."""
    if credentials is None:
        return None

    payload = AuthService.verify_token(credentials.credentials)
    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    user = await load_user(db, user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")

    return resolve_principal(user)


async def get_current_user(
    request: Request,
    principal: Optional[Principal] = Depends(get_optional_principal),
) -> Principal:
    check_authenticated(principal, attempted_url(request))
    return principal


def require_permission(*scopes: str):
    """Dependency factory: caller must hold every permission in ``scopes``"""
    async def _check(user: Principal = Depends(get_current_user)) -> Principal:
        check_permissions(user, scopes)
        return user
    return _check


def require_route(route: RouteDescriptor):
    """Dependency factory: apply a navigation route's requirements to an endpoint"""
    async def _check(
        request: Request,
        principal: Optional[Principal] = Depends(get_optional_principal),
    ) -> Optional[Principal]:
        url = attempted_url(request)
        decision = evaluate(principal, route, url)
        if decision.allowed:
            return principal
        logger.access_denied(decision.reason or "denied", path=route.path)
        if decision.reason == "not_authenticated":
            raise NotAuthenticated(return_url=url)
        raise InsufficientPermissions()
    return _check


# ============================================================
# PROJECT SCOPE
# ============================================================

@dataclass
class ProjectAccess:
    project: Project
    principal: Principal
    membership: Optional[ProjectMember]


async def get_membership(db: AsyncSession, project_id: str, user_id: str) -> Optional[ProjectMember]:
    result = await db.execute(
        select(ProjectMember).where(
            ProjectMember.project_id == project_id,
            ProjectMember.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


def can_see_all_projects(principal: Principal) -> bool:
    return principal.has_permission(P["ADMIN"]["ACCESS_DASHBOARD"])


async def authorize_project(
    db: AsyncSession,
    principal: Principal,
    project_id: str,
    *required: str,
) -> ProjectAccess:
    """Load a project and check ``required`` against the caller's project-scoped permissions.

    Private projects are hidden (404) from callers who are neither members
    nor administrators.
    """
    project = await db.get(Project, project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")

    membership = await get_membership(db, project_id, principal.id)
    is_member = membership is not None and membership.is_active
    if not (is_member or project.visibility == ProjectVisibility.PUBLIC or can_see_all_projects(principal)):
        raise HTTPException(status_code=404, detail="Project not found")

    scoped = principal.with_project(project_id, membership)
    check_permissions(scoped, required)
    return ProjectAccess(project=project, principal=scoped, membership=membership)


def project_access(*required: str):
    """Dependency factory for routes with a ``project_id`` path parameter"""
    async def _check(
        project_id: str,
        user: Principal = Depends(get_current_user),
        db: AsyncSession = Depends(get_db_session),
    ) -> ProjectAccess:
        return await authorize_project(db, user, project_id, *required)
    return _check


def visible_project_ids_clause(principal: Principal):
    """WHERE clause restricting projects to those the principal may list."""
    member_of = select(ProjectMember.project_id).where(
        ProjectMember.user_id == principal.id,
        ProjectMember.is_active.is_(True),
    )
    return Project.id.in_(member_of) | (Project.visibility == ProjectVisibility.PUBLIC)
