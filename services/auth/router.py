"""
services/auth/router.py
Authentication endpoints.
Implements: Register / Login / Phone OTP / Google OAuth2 → JWT issue → Refresh (rotation) → Logout
Password changes revoke every refresh token of the account.
"""

import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from authlib.integrations.starlette_client import OAuth, OAuthError
from fastapi import APIRouter, Cookie, Depends, HTTPException, Request, Response, status
from pybreaker import CircuitBreakerError
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from twilio.base.exceptions import TwilioException

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.notification.channels import normalize_phone, send_sms_now, sms_configured
from shared.middleware.auth import TokenData, get_current_user, get_token_data
from shared.models.models import OAuthProvider, RefreshToken, User, UserRole
from shared.schemas.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    LoginRequest,
    MessageResponse,
    PhoneOTPRequest,
    PhoneOTPVerifyRequest,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from shared.utils.audit import record_audit
from shared.utils.security import (
    create_access_token,
    create_refresh_token,
    generate_otp,
    hash_password,
    hash_token,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])

REFRESH_COOKIE = "refresh_token"

# ── OAuth Setup ───────────────────────────────────────────────
oauth = OAuth()
oauth.register(
    name="google",
    client_id=settings.GOOGLE_CLIENT_ID,
    client_secret=settings.GOOGLE_CLIENT_SECRET,
    server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
    client_kwargs={"scope": "openid email profile"},
    redirect_uri=settings.GOOGLE_REDIRECT_URI,
)


# ── Helpers ───────────────────────────────────────────────────

async def _get_or_create_oauth_user(
    db: AsyncSession,
    oauth_provider: OAuthProvider,
    oauth_id: str,
    email: str,
    name: str,
    avatar_url: Optional[str],
) -> User:
    """Get existing user by OAuth ID, link by email, or create a new devotee."""
    user = await db.scalar(
        select(User).where(
            User.oauth_provider == oauth_provider,
            User.oauth_id == oauth_id,
            User.deleted_at.is_(None),
        )
    )
    if user:
        return user

    existing = await db.scalar(select(User).where(User.email == email, User.deleted_at.is_(None)))
    if existing:
        # Link this provider to the password account with the same email
        existing.oauth_provider = oauth_provider
        existing.oauth_id = oauth_id
        existing.avatar_url = avatar_url or existing.avatar_url
        return existing

    user = User(
        oauth_provider=oauth_provider,
        oauth_id=oauth_id,
        email=email,
        name=name or email.split("@")[0],
        avatar_url=avatar_url,
        role=UserRole.USER,
    )
    db.add(user)
    await db.flush()
    return user


async def _issue_tokens(
    user: User,
    db: AsyncSession,
    response: Response,
    request: Request,
) -> tuple[str, str]:
    """Issue access + refresh tokens. Store refresh token hash in DB and set cookie."""
    access_token, _ = create_access_token(
        user_id=str(user.id),
        role=user.role.value,
        email=user.email,
    )

    raw_refresh, hashed_refresh = create_refresh_token()
    db.add(RefreshToken(
        user_id=user.id,
        token_hash=hashed_refresh,
        expires_at=datetime.now(timezone.utc) + timedelta(days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS),
        user_agent=(request.headers.get("user-agent") or "")[:500] or None,
        ip_address=request.client.host if request.client else None,
    ))

    # httpOnly cookie for web clients; mobile clients use the body
    response.set_cookie(
        key=REFRESH_COOKIE,
        value=raw_refresh,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS * 86400,
        path="/auth",
    )
    return access_token, raw_refresh


def _auth_response(user: User, access_token: str, raw_refresh: str) -> AuthResponse:
    return AuthResponse(
        access_token=access_token,
        refresh_token=raw_refresh,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=UserResponse.model_validate(user),
    )


async def _refresh_token_from(request: Request, cookie_value: Optional[str]) -> Optional[str]:
    if cookie_value:
        return cookie_value
    try:
        body = await request.json()
    except ValueError:
        return None
    return body.get("refresh_token") if isinstance(body, dict) else None


# ── Password auth ─────────────────────────────────────────────

@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    data: RegisterRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """Self-registration. Always creates a USER (devotee)."""
    email = data.email.lower() if data.email else None
    if email and await db.scalar(select(User.id).where(User.email == email)):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")
    if data.phone and await db.scalar(select(User.id).where(User.phone == data.phone)):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Phone number already registered")

    user = User(
        name=data.name,
        email=email,
        phone=data.phone,
        password_hash=hash_password(data.password),
        preferred_language=data.preferred_language,
        role=UserRole.USER,
        last_login_at=datetime.now(timezone.utc),
    )
    db.add(user)
    await db.flush()

    await record_audit(db, user, "USER_REGISTERED", "user", user.id, request=request)
    access_token, raw_refresh = await _issue_tokens(user, db, response, request)
    await db.commit()
    return _auth_response(user, access_token, raw_refresh)


@router.post("/login", response_model=AuthResponse)
async def login(
    data: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """Log in with email or phone plus password."""
    identifier = data.identifier.strip()
    user = await db.scalar(
        select(User).where(
            or_(User.email == identifier.lower(), User.phone == identifier),
            User.deleted_at.is_(None),
        )
    )

    if not user or not verify_password(data.password, user.password_hash):
        await record_audit(
            db, user, "FAILED_LOGIN", "auth",
            new_data={"identifier": identifier},
            request=request,
        )
        await db.commit()
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
        )
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")

    user.last_login_at = datetime.now(timezone.utc)
    access_token, raw_refresh = await _issue_tokens(user, db, response, request)
    await db.commit()
    return _auth_response(user, access_token, raw_refresh)


# ── Phone OTP ─────────────────────────────────────────────────

async def _user_by_phone(db: AsyncSession, phone: str) -> Optional[User]:
    numbers = {phone.strip(), normalize_phone(phone)}
    return await db.scalar(select(User).where(User.phone.in_(numbers), User.deleted_at.is_(None)))


@router.post("/phone/send-otp", response_model=MessageResponse)
async def send_phone_otp(
    data: PhoneOTPRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Text a one-time login code to a registered phone number.
    Only a hash of the code is kept, in Redis, for OTP_TTL_SECONDS.
    """
    user = await _user_by_phone(db, data.phone)
    if not user or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No account found with this phone number",
        )
    if not sms_configured() and settings.is_production:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="SMS login is not configured",
        )

    phone = normalize_phone(data.phone)
    cache = RedisCache(redis)
    if not await cache.start_otp_cooldown(phone, settings.OTP_RESEND_SECONDS):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Please wait before requesting another code",
            headers={"Retry-After": str(settings.OTP_RESEND_SECONDS)},
        )

    code = generate_otp(settings.OTP_LENGTH)
    await cache.store_otp(phone, hash_token(code), settings.OTP_TTL_SECONDS)
    body = (
        f"{code} is your {settings.ASHRAM_NAME} login code. "
        f"It expires in {settings.OTP_TTL_SECONDS // 60} minutes."
    )

    if sms_configured():
        try:
            await send_sms_now(phone, body)
        except TwilioException as e:
            await cache.clear_otp(phone, cooldown=True)
            logger.error(f"Login code SMS to user {user.id} failed: {e}")
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="Could not send the code, please try again",
            )
        except CircuitBreakerError:
            await cache.clear_otp(phone, cooldown=True)
            raise
    else:
        logger.warning(f"SMS not configured; login code for user {user.id} is {code}")

    await record_audit(db, user, "OTP_SENT", "auth", user.id, request=request)
    await db.commit()
    return MessageResponse(message="Verification code sent")


@router.post("/phone/verify-otp", response_model=AuthResponse)
async def verify_phone_otp(
    data: PhoneOTPVerifyRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Exchange a login code for tokens. Each code allows OTP_MAX_ATTEMPTS guesses."""
    phone = normalize_phone(data.phone)
    cache = RedisCache(redis)
    stored = await cache.get_otp(phone)
    if not stored:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Code expired or not requested")

    attempts = await cache.count_otp_attempt(phone, settings.OTP_TTL_SECONDS)
    if attempts > settings.OTP_MAX_ATTEMPTS:
        await cache.clear_otp(phone)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many attempts, please request a new code",
        )
    if not hmac.compare_digest(stored, hash_token(data.otp)):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid code")

    await cache.clear_otp(phone)
    user = await _user_by_phone(db, data.phone)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid code")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")

    user.last_login_at = datetime.now(timezone.utc)
    await record_audit(db, user, "OTP_LOGIN", "auth", user.id, request=request)
    access_token, raw_refresh = await _issue_tokens(user, db, response, request)
    await db.commit()
    return _auth_response(user, access_token, raw_refresh)


# ── Google OAuth2 ─────────────────────────────────────────────

@router.get("/google", summary="Initiate Google OAuth2 login")
async def google_login(request: Request):
    """
    Redirects the user to Google's OAuth2 consent page.
    The client should open this URL in a browser/webview.
    """
    if not settings.GOOGLE_CLIENT_ID:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Google sign-in is not configured",
        )
    return await oauth.google.authorize_redirect(request, settings.GOOGLE_REDIRECT_URI)


@router.get("/google/callback", response_model=AuthResponse, summary="Google OAuth2 callback")
async def google_callback(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    try:
        token = await oauth.google.authorize_access_token(request)
    except OAuthError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"OAuth error: {e.error}",
        )
    userinfo = token.get("userinfo")
    if not userinfo or not userinfo.get("email"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Could not fetch user info from Google",
        )

    user = await _get_or_create_oauth_user(
        db=db,
        oauth_provider=OAuthProvider.GOOGLE,
        oauth_id=userinfo["sub"],
        email=userinfo["email"].lower(),
        name=userinfo.get("name", ""),
        avatar_url=userinfo.get("picture"),
    )
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")

    user.last_login_at = datetime.now(timezone.utc)
    access_token, raw_refresh = await _issue_tokens(user, db, response, request)
    await db.commit()
    return _auth_response(user, access_token, raw_refresh)


# ── Session management ────────────────────────────────────────

@router.post("/refresh", response_model=TokenResponse, summary="Refresh access token")
async def refresh_token(
    request: Request,
    response: Response,
    refresh_token_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    db: AsyncSession = Depends(get_db),
):
    """
    Issue a new access token using a valid refresh token.
    Implements refresh token rotation: the old token is revoked.
    """
    raw_token = await _refresh_token_from(request, refresh_token_cookie)
    if not raw_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Refresh token required")

    db_token = await db.scalar(
        select(RefreshToken).where(
            RefreshToken.token_hash == hash_token(raw_token),
            RefreshToken.is_revoked.is_(False),
        )
    )
    if not db_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or revoked refresh token")
    if db_token.expires_at < datetime.now(timezone.utc):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Refresh token expired")

    user = await db.scalar(
        select(User).where(User.id == db_token.user_id, User.deleted_at.is_(None))
    )
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    db_token.is_revoked = True
    access_token, _ = await _issue_tokens(user, db, response, request)
    await db.commit()

    return TokenResponse(
        access_token=access_token,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


@router.post("/logout", response_model=MessageResponse, summary="Logout user")
async def logout(
    request: Request,
    response: Response,
    token_data: TokenData = Depends(get_token_data),
    refresh_token_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Deny-list the access token until it expires and revoke the refresh token."""
    ttl = int(token_data.exp - datetime.now(timezone.utc).timestamp())
    if ttl > 0:
        await RedisCache(redis).revoke_token(token_data.jti, ttl)

    raw_refresh = await _refresh_token_from(request, refresh_token_cookie)
    if raw_refresh:
        db_token = await db.scalar(
            select(RefreshToken).where(RefreshToken.token_hash == hash_token(raw_refresh))
        )
        if db_token:
            db_token.is_revoked = True

    response.delete_cookie(key=REFRESH_COOKIE, path="/auth")
    await db.commit()
    return MessageResponse(message="Logged out successfully")


@router.get("/me", response_model=UserResponse, summary="Get current user")
async def get_me(current_user: User = Depends(get_current_user)):
    """Returns the authenticated user's profile."""
    return UserResponse.model_validate(current_user)


@router.post("/change-password", response_model=MessageResponse)
async def change_password(
    data: ChangePasswordRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Set a new password. Other devices are signed out at their next refresh."""
    has_password = current_user.password_hash is not None
    if has_password and not verify_password(data.current_password or "", current_user.password_hash):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Current password is incorrect")
    if data.current_password == data.new_password:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="New password must differ from the current one",
        )

    current_user.password_hash = hash_password(data.new_password)
    await db.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == current_user.id, RefreshToken.is_revoked.is_(False))
        .values(is_revoked=True)
    )
    await record_audit(db, current_user, "PASSWORD_CHANGED", "user", current_user.id, request=request)
    await db.commit()
    return MessageResponse(message="Password changed successfully")
