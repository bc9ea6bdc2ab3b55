"""Account routes plus the bearer-token dependencies every other router uses."""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from rental_platform.domain.models import User
from rental_platform.domain.schemas import (
    TokenResponse,
    UserCreate,
    UserLogin,
    UserResponse,
)
from rental_platform.infra.database import get_db
from rental_platform.services.auth_service import (
    authenticate,
    create_access_token,
    create_user,
    decode_token,
    get_user_by_email,
)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _issue(user: User) -> TokenResponse:
    return TokenResponse(
        access_token=create_access_token(user.id, user.role),
        user=UserResponse.model_validate(user),
    )


async def get_current_user_dep(
    request: Request, db: AsyncSession = Depends(get_db)
) -> User:
    """Dependency: the active user named by the ``Authorization: Bearer`` token."""
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise _unauthorized("Missing or invalid token")
    claims = decode_token(token.strip())
    if claims is None:
        raise _unauthorized("Invalid or expired token")
    user = await db.get(User, claims["sub"])
    if user is None or not user.is_active:
        raise _unauthorized("User not found or inactive")
    return user


def require_role(*roles: str):
    """Dependency factory: current user, provided their role is one of ``roles``."""

    async def checker(user: User = Depends(get_current_user_dep)) -> User:
        if user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role: {', '.join(roles)}",
            )
        return user

    return checker


@router.post("/signup", response_model=TokenResponse)
async def signup(data: UserCreate, db: AsyncSession = Depends(get_db)):
    if await get_user_by_email(db, data.email):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = await create_user(db, data.email, data.password, data.name, data.role, data.phone)
    return _issue(user)


@router.post("/login", response_model=TokenResponse)
async def login(data: UserLogin, db: AsyncSession = Depends(get_db)):
    user = await authenticate(db, data.email, data.password)
    if user is None:
        raise _unauthorized("Invalid email or password")
    return _issue(user)


@router.get("/me", response_model=UserResponse)
async def me(user: User = Depends(get_current_user_dep)):
    return UserResponse.model_validate(user)
