import logging
from typing import Annotated, Optional

from config import settings
from db import SessionDep
from fastapi import APIRouter, Cookie, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from itsdangerous import BadData, URLSafeTimedSerializer
from models import ROLES, User
from passlib.context import CryptContext
from pydantic import ValidationError as PydanticValidationError
from schemas import LoginData, Principal, UserCreate, UserRead
from sqlmodel import select

router = APIRouter(tags=["auth"])
logger = logging.getLogger(__name__)

SESSION_COOKIE = "session"
serializer = URLSafeTimedSerializer(settings.secret_key)


pwd_context = CryptContext(
    schemes=["pbkdf2_sha256"],
    deprecated="auto",
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_session_token(user_id: int, role: str) -> str:
    """
    Store user_id + role in the signed token.
    Example data:
        {"user_id": 3, "role": "donor"}
    """
    return serializer.dumps({"user_id": user_id, "role": role})


def verify_session_token(token: str, max_age_seconds: int = settings.session_max_age):
    """
    Returns dict {'user_id': ..., 'role': ...} if valid,
    or None if token is invalid/expired.
    """
    try:
        return serializer.loads(token, max_age=max_age_seconds)
    except BadData:
        return None


def _principal_from_token(session: SessionDep, session_token: Optional[str]) -> Optional[Principal]:
    if session_token is None:
        return None

    data = verify_session_token(session_token)
    if not data:
        return None

    user = session.get(User, data["user_id"])
    if user is None or user.role != data["role"]:
        return None

    return Principal(id=user.id, role=user.role)


def get_current_principal(
    session: SessionDep,
    session_token: Optional[str] = Cookie(default=None, alias=SESSION_COOKIE),
) -> Principal:
    """
    Reads the 'session' cookie and returns the signed-in principal.
    Raises 401 if not logged in / invalid.
    """
    if session_token is None:
        raise HTTPException(status_code=401, detail="Not logged in")

    principal = _principal_from_token(session, session_token)
    if principal is None:
        raise HTTPException(status_code=401, detail="Invalid or expired session")

    return principal


CurrentPrincipalDep = Annotated[Principal, Depends(get_current_principal)]


def get_optional_principal(
    session: SessionDep,
    session_token: Optional[str] = Cookie(default=None, alias=SESSION_COOKIE),
) -> Optional[Principal]:
    """
    Like get_current_principal, but returns None instead of raising 401,
    so the engine can decide what an anonymous caller may do.
    """
    return _principal_from_token(session, session_token)


OptionalPrincipalDep = Annotated[Optional[Principal], Depends(get_optional_principal)]


def _set_session_cookie(resp, token: str) -> None:
    resp.set_cookie(
        key=SESSION_COOKIE,
        value=token,
        httponly=True,
        secure=False,
        samesite="lax",
        max_age=settings.session_max_age,
    )


async def _read_payload(request: Request, fields: tuple[str, ...]) -> tuple[dict, bool]:
    """
    Accept either JSON (API clients) or form-data (HTML forms).
    Returns the payload and whether it came in as JSON.
    """
    content_type = request.headers.get("content-type", "")

    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Request body is not valid JSON") from None
        if not isinstance(data, dict):
            raise HTTPException(status_code=400, detail="Request body must be a JSON object")
        return data, True

    form = await request.form()
    data = {}
    for field in fields:
        raw = form.get(field)
        data[field] = raw if isinstance(raw, str) else None

    if not all(data.values()):
        raise HTTPException(status_code=400, detail="All fields are required")

    return data, False


@router.post("/register")
async def register(request: Request, session: SessionDep):
    """
    Register a new donor or recipient with a hashed password.
    """
    data, is_json = await _read_payload(request, ("email", "name", "password", "role"))

    try:
        user_in = UserCreate(**data)
    except PydanticValidationError as exc:
        raise HTTPException(
            status_code=400,
            detail=f"Registration needs a valid email, a name, a password and a role ({', '.join(ROLES)})",
        ) from exc

    existing = session.exec(
        select(User).where(User.email == user_in.email)
    ).first()

    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")

    user = User(
        email=user_in.email,
        name=user_in.name,
        password_hash=hash_password(user_in.password),
        role=user_in.role,
    )

    session.add(user)
    session.commit()
    session.refresh(user)

    if user.id is None:
        raise HTTPException(
            status_code=500, detail="User was not created successfully"
        )

    logger.info("User registered", extra={"user_id": user.id, "role": user.role})
    token = create_session_token(user.id, user.role)

    if is_json:
        resp = JSONResponse(
            {"message": "Registration successful", "role": user.role, "id": user.id}
        )
    else:
        resp = RedirectResponse(url="/", status_code=303)

    _set_session_cookie(resp, token)
    return resp


@router.post("/login")
async def login(request: Request, session: SessionDep):
    """
    Log in with email + password and set a signed cookie.
    """
    data, is_json = await _read_payload(request, ("email", "password"))

    try:
        payload = LoginData(**data)
    except PydanticValidationError as exc:
        raise HTTPException(status_code=400, detail="Invalid email or password") from exc

    user = session.exec(
        select(User).where(User.email == payload.email)
    ).first()

    if user is None or not verify_password(payload.password, user.password_hash):
        logger.warning("Failed login attempt", extra={"email": payload.email})
        raise HTTPException(
            status_code=400, detail="Invalid email or password"
        )

    token = create_session_token(user.id, user.role)

    if is_json:
        resp = JSONResponse({"message": "Login successful", "role": user.role, "id": user.id})
    else:
        resp = RedirectResponse(url="/", status_code=303)

    _set_session_cookie(resp, token)
    return resp


@router.post("/logout")
def logout():
    """
    Clear the session cookie.
    """
    response = JSONResponse({"message": "Logged out"})
    response.delete_cookie(SESSION_COOKIE)
    return response


@router.get("/me", response_model=UserRead)
def read_me(session: SessionDep, current: CurrentPrincipalDep):
    """
    Get info about the currently logged-in user.
    """
    return session.get(User, current.id)
