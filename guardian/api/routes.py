from __future__ import annotations

import ipaddress
from typing import Optional, Sequence, Union

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from guardian.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutResponse,
    SignupRequest,
    TokenValidationRequest,
    TokenValidationResponse,
)
from guardian.logging import get_correlation_id
from guardian.service.auth import IssuedToken
from guardian.service.errors import AuthDeniedError, Denied
from guardian.service.runtime import Runtime
from guardian.storage.models import RequestMeta

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

router = APIRouter(prefix="/api/auth", tags=["auth"])


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
        raise _http_error("server_error", "service not initialised", status_code=503)
    return runtime


def _is_trusted_peer(host: Optional[str], trusted_networks: Sequence[IPNetwork]) -> bool:
    if not host:
        return False
    try:
        peer = ipaddress.ip_address(host)
    except ValueError:
        return False
    return any(peer in network for network in trusted_networks)


def client_address(
    request: Request,
    *,
    trust_forwarded: bool = False,
    trusted_proxies: Sequence[IPNetwork] = (),
) -> str:
    """Resolve the caller's address.

    Forwarding headers are read only when ``trust_forwarded`` is set and the
    socket peer is one of ``trusted_proxies``.
    """
    peer = request.client.host if request.client else None
    if trust_forwarded and _is_trusted_peer(peer, trusted_proxies):
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("x-real-ip")
        if real_ip and real_ip.strip():
            return real_ip.strip()
    return peer or "unknown"


def _request_meta(request: Request, runtime: Runtime) -> RequestMeta:
    settings = runtime.settings
    return RequestMeta(
        ip_addr=client_address(
            request,
            trust_forwarded=settings.trust_forwarded_headers,
            trusted_proxies=settings.trusted_proxy_networks,
        ),
        user_agent=request.headers.get("user-agent"),
        method=request.method,
        endpoint=request.url.path,
        request_id=get_correlation_id(),
    )


def _require_client_headers(
    client_id: Optional[str], client_key: Optional[str]
) -> tuple[str, str]:
    if not client_id or not client_key:
        raise _http_error(
            "validation_error",
            "X-Client-Id and X-Client-Key headers are required",
            status_code=400,
        )
    return client_id, client_key


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise _http_error("unauthorized", "bearer token required", status_code=401)
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _http_error("unauthorized", "bearer token required", status_code=401)
    return token.strip()


def _unwrap(result: Union[IssuedToken, Denied]) -> IssuedToken:
    if isinstance(result, Denied):
        raise AuthDeniedError(result)
    return result


def _ok(data: dict) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    cid = get_correlation_id()
    if cid:
        envelope.request_id = cid
    return envelope


def _auth_envelope(issued: IssuedToken) -> Envelope:
    return _ok(
        AuthResponse(
            access_token=issued.token,
            user_id=issued.user_id,
            tenant_id=issued.tenant_id,
            session_id=issued.session_id,
            expires_at=issued.expires_at,
        ).model_dump(mode="json")
    )


@router.post("/signup", response_model=Envelope)
def signup(
    body: SignupRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
    x_client_id: Optional[str] = Header(default=None),
    x_client_key: Optional[str] = Header(default=None),
):
    """Register a user under the calling tenant and open a session."""
    client_id, client_key = _require_client_headers(x_client_id, x_client_key)
    result = runtime.auth.signup(
        body.email,
        body.password,
        client_id,
        client_key,
        first_name=body.first_name,
        last_name=body.last_name,
        meta=_request_meta(request, runtime),
    )
    return _auth_envelope(_unwrap(result))


@router.post("/login", response_model=Envelope)
def login(
    body: LoginRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
    x_client_id: Optional[str] = Header(default=None),
    x_client_key: Optional[str] = Header(default=None),
):
    client_id, client_key = _require_client_headers(x_client_id, x_client_key)
    result = runtime.auth.login(
        body.email,
        body.password,
        client_id,
        client_key,
        meta=_request_meta(request, runtime),
    )
    return _auth_envelope(_unwrap(result))


@router.post("/validate", response_model=Envelope)
def validate(
    body: TokenValidationRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
    x_client_id: Optional[str] = Header(default=None),
    x_client_key: Optional[str] = Header(default=None),
):
    """Check a bearer token on behalf of a tenant backend."""
    client_id, client_key = _require_client_headers(x_client_id, x_client_key)
    if not body.token.strip():
        raise _http_error("validation_error", "token is required", status_code=400)
    result = runtime.auth.validate_token(
        body.token.strip(),
        client_id,
        tenant_secret=client_key,
        meta=_request_meta(request, runtime),
    )
    if isinstance(result, Denied):
        raise AuthDeniedError(result)
    return _ok(
        TokenValidationResponse(
            valid=True,
            user_id=result.user_id,
            client_id=result.tenant_id,
            session_id=result.session_id,
        ).model_dump()
    )


@router.post("/logout", response_model=Envelope)
def logout(
    request: Request,
    runtime: Runtime = Depends(get_runtime),
    authorization: Optional[str] = Header(default=None),
    x_client_id: Optional[str] = Header(default=None),
    x_client_key: Optional[str] = Header(default=None),
    all_sessions: bool = False,
):
    client_id, client_key = _require_client_headers(x_client_id, x_client_key)
    if not runtime.tenants.validate(client_id, client_key):
        raise _http_error("unauthorized", "invalid client credentials", status_code=401)
    token = _bearer_token(authorization)
    meta = _request_meta(request, runtime)
    if all_sessions:
        closed = runtime.auth.logout_all(token, client_id, meta=meta)
        if isinstance(closed, Denied):
            raise AuthDeniedError(closed)
        data = LogoutResponse(sessions_closed=closed)
    else:
        result = runtime.auth.logout(token, client_id, meta=meta)
        if isinstance(result, Denied):
            raise AuthDeniedError(result)
        data = LogoutResponse(session_id=result.session_id)
    return _ok(data.model_dump())


health_router = APIRouter(tags=["health"])


@health_router.get("/healthz")
def healthz():
    return {"status": "ok"}
