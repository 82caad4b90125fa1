from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Response

from shopgate.api.admission import get_deadline, require_identity
from shopgate.api.schemas import (
    AuthResponse,
    ErrorBody,
    LoginRequest,
    ProfileResponse,
    SignupConfirmRequest,
    SignupRequest,
)
from shopgate.logging import get_logger
from shopgate.service.errors import NotFoundError
from shopgate.service.identity import AuthContext, Deadline
from shopgate.service.runtime import get_runtime
from shopgate.storage.models import ACCOUNT_ROLE_ADMIN, ACCOUNT_ROLE_USER

logger = get_logger(__name__)

router = APIRouter(
    responses={
        status: {"model": ErrorBody}
        for status in (400, 401, 403, 404, 409, 422, 429, 500, 504)
    }
)

get_user = require_identity(ACCOUNT_ROLE_USER)
get_admin_user = require_identity(ACCOUNT_ROLE_ADMIN)
get_any_user = require_identity(None)


@router.post("/auth/signup", status_code=204, response_class=Response)
async def signup(
    body: SignupRequest, deadline: Optional[Deadline] = Depends(get_deadline)
) -> Response:
    runtime = get_runtime()
    await runtime.identity.signup(
        body.nickname, body.email, body.password, deadline=deadline
    )
    return Response(status_code=204)


@router.post("/auth/signup-with-token", status_code=201, response_model=AuthResponse)
async def signup_with_token(
    body: SignupConfirmRequest, deadline: Optional[Deadline] = Depends(get_deadline)
) -> AuthResponse:
    runtime = get_runtime()
    result = await runtime.identity.confirm_signup(body.token, deadline=deadline)
    return AuthResponse(**result.to_response())


async def _login(body: LoginRequest, role: str, deadline: Optional[Deadline]) -> AuthResponse:
    runtime = get_runtime()
    result = await runtime.identity.login(
        nickname=body.nickname,
        email=body.email,
        password=body.password,
        required_role=role,
        deadline=deadline,
    )
    return AuthResponse(**result.to_response())


@router.post("/auth/login", status_code=201, response_model=AuthResponse)
async def login(
    body: LoginRequest, deadline: Optional[Deadline] = Depends(get_deadline)
) -> AuthResponse:
    return await _login(body, ACCOUNT_ROLE_USER, deadline)


@router.post("/auth/alogin", status_code=201, response_model=AuthResponse)
async def admin_login(
    body: LoginRequest, deadline: Optional[Deadline] = Depends(get_deadline)
) -> AuthResponse:
    return await _login(body, ACCOUNT_ROLE_ADMIN, deadline)


@router.post("/auth/logout", status_code=204, response_class=Response)
async def logout(
    principal: AuthContext = Depends(get_any_user),
    deadline: Optional[Deadline] = Depends(get_deadline),
) -> Response:
    runtime = get_runtime()
    await runtime.identity.logout(principal, deadline=deadline)
    return Response(status_code=204)


async def _profile(principal: AuthContext) -> ProfileResponse:
    runtime = get_runtime()
    account = await asyncio.to_thread(runtime.store.get_account, principal.account_id)
    if account is None:
        logger.warning("profile_account_missing", account_id=principal.account_id)
        raise NotFoundError("The account could not be found")
    return ProfileResponse(
        uuid=account.id,
        role=account.role,
        nickname=account.nickname,
        email=account.email,
        state=account.state,
        registration_method=account.registration_method,
        avatar_url=runtime.identity.avatar_url(account.id),
        created_at=account.created_at,
        last_activity=account.last_activity,
    )


@router.get("/user/profile", response_model=ProfileResponse)
async def user_profile(principal: AuthContext = Depends(get_user)) -> ProfileResponse:
    return await _profile(principal)


@router.get("/admin/profile", response_model=ProfileResponse)
async def admin_profile(principal: AuthContext = Depends(get_admin_user)) -> ProfileResponse:
    return await _profile(principal)
