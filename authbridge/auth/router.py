"""
Thin HTTP adapter over the federation flows.
"""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse
from loguru import logger
from authbridge.auth.response import (
    AuthorizationResponse,
    BindingListResponse,
    BindResponse,
    BindStatusResponse,
    LoginResponse,
    RefreshResponse,
)
from authbridge.auth.schemas import (
    AuthorizeArgs,
    BindArgs,
    LoginArgs,
    MiniappLoginArgs,
    UnbindArgs,
)
from authbridge.auth.service import OAuthAuthService, get_auth_service
from authbridge.auth.templater import error_page
from authbridge.config import settings
from authbridge.constants import STATE_ACTION_BIND
from authbridge.exceptions import OAuthError
from authbridge.platforms import STATELESS_LOGIN_PLATFORMS, catalogue
from authbridge.user.schemas import User
from authbridge.user.service import get_current_user

router = APIRouter()


def _client_info(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _http_error(exc: OAuthError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())


def _set_session_cookie(response, token: str):
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=settings.session_token_ttl_seconds,
        httponly=True,
        secure=True,
        samesite="lax",
        domain=f".{settings.base_domain}",
    )


@router.get("/platforms")
async def list_platforms(service: OAuthAuthService = Depends(get_auth_service)):
    """
    Platform and client type catalogue, with the platforms this deployment can serve.
    """
    return {
        **catalogue(),
        "available_platforms": service.providers.platforms(),
        "stateless_login_platforms": list(STATELESS_LOGIN_PLATFORMS),
    }


@router.post("/authorize", response_model=AuthorizationResponse)
async def authorize(
    args: AuthorizeArgs,
    request: Request,
    current_user: Optional[User] = Depends(get_current_user(raise_not_found=False)),
    service: OAuthAuthService = Depends(get_auth_service),
):
    """
    Start a handshake. Binding always targets the session user.
    """
    user_id = None
    if args.action == STATE_ACTION_BIND:
        if not current_user:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required",
            )
        user_id = current_user.user_id
    try:
        return await service.initiate_authorization(
            args.platform,
            args.client_type,
            action=args.action,
            user_id=user_id,
            redirect_url=args.redirect_url,
            extra=args.extra,
            options={"scope": args.scope} if args.scope else None,
            **_client_info(request),
        )
    except OAuthError as exc:
        raise _http_error(exc)


@router.post("/login", response_model=LoginResponse)
async def login(
    args: LoginArgs,
    request: Request,
    service: OAuthAuthService = Depends(get_auth_service),
):
    try:
        return await service.complete_login(
            args.platform,
            args.code,
            state=args.state,
            client_type_hint=args.client_type,
            **_client_info(request),
        )
    except OAuthError as exc:
        raise _http_error(exc)


@router.get("/callback/{platform}")
async def callback(
    platform: str,
    request: Request,
    code: str = Query(""),
    state: str = Query(""),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    service: OAuthAuthService = Depends(get_auth_service),
):
    """
    Browser landing point after the third party redirects back.
    """
    retry_url = f"https://{settings.base_domain}/login"
    if error:
        logger.info(f"{platform} callback returned error {error}: {error_description}")
        return HTMLResponse(
            content=error_page(error, error_description or "Authorization was cancelled."),
            status_code=400,
        )
    if not state:
        return HTMLResponse(
            content=error_page("state_invalid", "Authorization expired, please try again."),
            status_code=400,
        )
    try:
        result = await service.complete_login(
            platform, code, state=state, **_client_info(request)
        )
    except OAuthError as exc:
        detail = exc.to_dict()
        return HTMLResponse(
            content=error_page(detail["error"], detail["message"], retry_url=retry_url),
            status_code=exc.status_code,
        )
    response = RedirectResponse(
        url=result.redirect_target or f"https://{settings.base_domain}/",
        status_code=302,
    )
    _set_session_cookie(response, result.session_token)
    return response


@router.post("/miniapp/login", response_model=LoginResponse)
async def miniapp_login(
    args: MiniappLoginArgs,
    request: Request,
    service: OAuthAuthService = Depends(get_auth_service),
):
    """
    State-less login for mini programs (wx.login code plus optional profile).
    """
    try:
        return await service.complete_login(
            args.platform,
            args.code,
            client_type_hint=args.client_type,
            profile=args.profile,
            **_client_info(request),
        )
    except OAuthError as exc:
        raise _http_error(exc)


@router.post("/bind", response_model=BindResponse)
async def bind(
    args: BindArgs,
    request: Request,
    current_user: User = Depends(get_current_user()),
    service: OAuthAuthService = Depends(get_auth_service),
):
    try:
        return await service.complete_bind(
            current_user.user_id,
            args.platform,
            args.code,
            args.state,
            profile=args.profile,
            **_client_info(request),
        )
    except OAuthError as exc:
        raise _http_error(exc)


@router.post("/unbind")
async def unbind(
    args: UnbindArgs,
    request: Request,
    current_user: User = Depends(get_current_user()),
    service: OAuthAuthService = Depends(get_auth_service),
):
    try:
        await service.unbind(current_user.user_id, args.platform, **_client_info(request))
    except OAuthError as exc:
        raise _http_error(exc)
    return {"unbound": True, "platform": args.platform}


@router.get("/bindings", response_model=BindingListResponse)
async def list_bindings(
    current_user: User = Depends(get_current_user()),
    service: OAuthAuthService = Depends(get_auth_service),
):
    bindings = await service.list_bindings(current_user.user_id)
    return BindingListResponse(bindings=bindings, total=len(bindings))


@router.get("/bindings/status", response_model=BindStatusResponse)
async def binding_status(
    platform: str = Query(...),
    current_user: User = Depends(get_current_user()),
    service: OAuthAuthService = Depends(get_auth_service),
):
    binding = await service.binding_status(current_user.user_id, platform)
    return BindStatusResponse(platform=platform, is_bound=binding is not None, binding=binding)


@router.post("/bindings/{binding_id}/refresh", response_model=RefreshResponse)
async def refresh(
    binding_id: str,
    request: Request,
    current_user: User = Depends(get_current_user()),
    service: OAuthAuthService = Depends(get_auth_service),
):
    try:
        return await service.refresh_token(
            binding_id, user_id=current_user.user_id, **_client_info(request)
        )
    except OAuthError as exc:
        raise _http_error(exc)
