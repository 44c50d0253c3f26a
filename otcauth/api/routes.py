from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from otcauth.api.schemas import (
    Envelope,
    LogoutRequest,
    LogoutResponse,
    SendCodeRequest,
    SendCodeResponse,
    SessionListResponse,
    SessionResponse,
    UserListResponse,
    UserResponse,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from otcauth.service.auth import extract_bearer
from otcauth.service.runtime import Runtime
from otcauth.service.users import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from otcauth.storage.models import SessionClaims

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise _http_error("service_unavailable", "service is starting", status_code=503)
    return runtime


async def get_claims(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> SessionClaims:
    return await runtime.auth.authenticate(authorization)


@router.post("/otp/send", response_model=Envelope, tags=["otp"])
async def send_code(body: SendCodeRequest, runtime: Runtime = Depends(get_runtime)):
    issued = await runtime.auth.send(body.phone_number)
    return Envelope(
        status="ok",
        data=SendCodeResponse(
            message="verification code sent",
            session_handle=issued.session_handle,
            phone_number=body.phone_number,
            expires_at=issued.expires_at,
        ),
    )


@router.post("/otp/verify", response_model=Envelope, tags=["otp"])
async def verify_code(body: VerifyCodeRequest, runtime: Runtime = Depends(get_runtime)):
    result = await runtime.auth.verify(body.session_handle, body.code)
    return Envelope(
        status="ok",
        data=VerifyCodeResponse(
            token=result.bearer_token,
            expires_at=result.expires_at,
            user=UserResponse.from_user(result.user),
            message="login successful",
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    token = extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    logout_all = body.logout_all if body else False
    result = await runtime.auth.logout(token, logout_all=logout_all)
    message = "all sessions revoked" if logout_all else "session revoked"
    return Envelope(
        status="ok",
        data=LogoutResponse(message=message, tokens_revoked=result.tokens_revoked),
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(
    claims: SessionClaims = Depends(get_claims),
    runtime: Runtime = Depends(get_runtime),
):
    records = await runtime.sessions.list_sessions(claims.user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            sessions=[
                SessionResponse.from_record(r, current_fingerprint=claims.token_fingerprint)
                for r in records
            ]
        ),
    )


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(
    claims: SessionClaims = Depends(get_claims),
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.users.get(claims.user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user_by_id(
    user_id: str,
    claims: SessionClaims = Depends(get_claims),
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.users.get(user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    search: Optional[str] = Query(None, max_length=32),
    claims: SessionClaims = Depends(get_claims),
    runtime: Runtime = Depends(get_runtime),
):
    result = await runtime.users.list_users(page=page, page_size=page_size, search=search)
    return Envelope(
        status="ok",
        data=UserListResponse(
            users=[UserResponse.from_user(u) for u in result.users],
            total=result.total,
            page=result.page,
            page_size=result.page_size,
            total_pages=result.total_pages,
        ),
    )
