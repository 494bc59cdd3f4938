from fastapi import APIRouter, HTTPException, Request, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from datetime import datetime, timedelta

from config import Settings
from models.user import CurrentUser, Role, UserResponse
from services.base import normalize_address

router = APIRouter()
security = HTTPBearer()


def create_access_token(data: dict, settings: Settings, expires_delta: timedelta = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.access_token_expire_minutes)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)
    return encoded_jwt


async def get_current_user(request: Request, credentials: HTTPAuthorizationCredentials = Depends(security)):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    settings: Settings = request.app.state.settings
    try:
        payload = jwt.decode(credentials.credentials, settings.secret_key, algorithms=[settings.algorithm])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
        role = Role(payload.get("role", Role.USER.value))
    except (JWTError, ValueError):
        raise credentials_exception

    return CurrentUser(id=normalize_address(user_id), role=role)


async def get_current_admin_user(current_user: CurrentUser = Depends(get_current_user)):
    if current_user.role != Role.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_user


@router.get("/me", response_model=UserResponse)
async def get_me(request: Request, current_user: CurrentUser = Depends(get_current_user)):
    """Current wallet's profile, registered on first call"""
    user = await request.app.state.referral_service.ensure_user(current_user.id, current_user.role)
    return UserResponse.from_doc(user)
