"""Pinning web API (accounts and dPack management).

Brief:
  Served on the configured `domain` host when the `webapi` block is set.
  Clients log in with the configured username/password, receive a session
  token, and send it back as "Authorization: Bearer <token>" to list, add,
  update and remove pinned dPacks. Every change is written straight back to
  the YAML file through the CanonicalStore.

  Handlers are plain `def` functions so FastAPI runs them in its threadpool;
  the store does blocking file I/O under its own lock.
"""

from __future__ import annotations

import base64
import hmac
import logging
import secrets
import threading
from typing import Any, Dict, List, Optional, Set, Union

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from ..config.config_schema import match_content_key
from ..config.store import SITE_INVALID, SITE_NOT_FOUND, CanonicalStore
from ..errors import ConfigValidationError
from ..vhosts.derivation import MirrorVhost, dweb_url_for_key

logger = logging.getLogger(__name__)

SERVICE_TITLE = "My dPack Forever Service"
SERVICE_DESCRIPTION = "Keep your DPacks online!"
API_REL = "https://vault.org/services/purl/purl/dweb/spec/dpack-api"


class WebApiError(Exception):
    """Error answered as {"message": ...} with the given status."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class SessionStore:
    """Thread-safe set of live session tokens."""

    def __init__(self) -> None:
        self._tokens: Set[str] = set()
        self._lock = threading.Lock()

    def create(self) -> str:
        token = base64.b64encode(secrets.token_bytes(32)).decode("ascii")
        with self._lock:
            self._tokens.add(token)
        return token

    def __contains__(self, token: object) -> bool:
        with self._lock:
            return token in self._tokens

    def discard(self, token: str) -> None:
        with self._lock:
            self._tokens.discard(token)

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)


class LoginRequest(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None


class DPackRequest(BaseModel):
    """Body of add/remove/update calls. `domains` maps to otherDomains."""

    url: Optional[str] = None
    name: Optional[str] = None
    domains: Optional[Union[List[str], str]] = None


def validation_message(exc: ConfigValidationError) -> str:
    """Brief: Client-facing message for a rejected dPack entry.

    Inputs:
      - exc: ConfigValidationError raised by the entry validators.

    Outputs:
      - str: message naming the offending field and value.
    """

    if exc.invalid_url:
        return f"Invalid DPack url ({exc.value}). Must provide the url of the DPack you wish to pin."
    if exc.invalid_name:
        return f"Invalid name ({exc.value}). Must provide a name for the DPack."
    if exc.invalid_domain:
        return f"Invalid domain ({exc.value})."
    return "There were errors in your request."


def dpack_item(site: MirrorVhost) -> Dict[str, Any]:
    return {
        "url": dweb_url_for_key(site.content_key),
        "name": site.name,
        "additionalUrls": list(site.additional_urls),
    }


def psa_document() -> Dict[str, Any]:
    return {
        "PSA": 1,
        "title": SERVICE_TITLE,
        "description": SERVICE_DESCRIPTION,
        "links": [
            {"rel": API_REL, "title": "dPack Accounts API", "href": "/v1/accounts"},
            {"rel": API_REL, "title": "dPack API", "href": "/v1/dpacks"},
        ],
    }


def _bearer_token(request: Request) -> str:
    header = request.headers.get("authorization") or ""
    if header.startswith("Bearer "):
        return header[len("Bearer "):]
    return ""


def _build_session_dependency(sessions: SessionStore):
    """Build a FastAPI dependency that requires a live session token.

    Outputs:
      - Dependency callable returning the session token.
    """

    def _require_session(request: Request) -> str:
        token = _bearer_token(request)
        if not token or token not in sessions:
            raise WebApiError(401, "You must sign in to access this resource.")
        return token

    return _require_session


def build_webapi_router(store: CanonicalStore, sessions: SessionStore) -> APIRouter:
    """Brief: Create the web API routes bound to one store and session set.

    Inputs:
      - store: CanonicalStore holding the pinned dPacks.
      - sessions: SessionStore for issued tokens.

    Outputs:
      - APIRouter to include in the application.
    """

    router = APIRouter()
    require_session = _build_session_dependency(sessions)

    @router.get("/.well-known/psa")
    def well_known_psa() -> Dict[str, Any]:
        return psa_document()

    @router.post("/v1/accounts/login")
    def login(body: LoginRequest) -> Dict[str, Any]:
        webapi = store.settings.webapi or {}
        username = str(webapi.get("username", ""))
        password = str(webapi.get("password", ""))
        ok_user = hmac.compare_digest((body.username or "").encode(), username.encode())
        ok_pass = hmac.compare_digest((body.password or "").encode(), password.encode())
        if not (ok_user and ok_pass and username):
            logger.warning("Rejected web API login for %r", body.username)
            raise WebApiError(403, "Invalid username or password.")
        return {"sessionToken": sessions.create()}

    @router.post("/v1/accounts/logout")
    def logout(token: str = Depends(require_session)) -> Response:
        sessions.discard(token)
        return Response(status_code=200)

    @router.get("/v1/accounts/account")
    def account(_token: str = Depends(require_session)) -> Dict[str, Any]:
        webapi = store.settings.webapi or {}
        return {"username": webapi.get("username")}

    @router.get("/v1/dpacks")
    def list_dpacks(_token: str = Depends(require_session)) -> Dict[str, Any]:
        return {"items": [dpack_item(site) for site in store.list_sites()]}

    @router.post("/v1/dpacks/add")
    def add_dpack(body: DPackRequest, _token: str = Depends(require_session)) -> Response:
        entry: Dict[str, Any] = {"url": body.url}
        if body.name:
            entry["name"] = body.name
        if body.domains:
            entry["otherDomains"] = body.domains
        outcome = store.try_add_site(entry)
        if outcome.status == SITE_INVALID:
            raise WebApiError(422, validation_message(outcome.error))
        logger.info("Web API pinned %s (%s)", body.url, outcome.status)
        return Response(status_code=200)

    @router.post("/v1/dpacks/remove")
    def remove_dpack(body: DPackRequest, _token: str = Depends(require_session)) -> Response:
        key = match_content_key(body.url)
        if key is None:
            raise WebApiError(
                422,
                f"Invalid DPack url ({body.url}). Must provide the url of the DPack you wish to unpin.",
            )
        removed = store.remove_site(key)
        logger.info("Web API unpinned %s (%d entries)", key, removed)
        return Response(status_code=200)

    @router.get("/v1/dpacks/item/{key}")
    def get_dpack(key: str, _token: str = Depends(require_session)) -> Dict[str, Any]:
        site = store.get_site(key)
        if site is None:
            raise WebApiError(404, "DPack not found")
        return dpack_item(site)

    @router.post("/v1/dpacks/item/{key}")
    def update_dpack(key: str, body: DPackRequest, _token: str = Depends(require_session)) -> Response:
        outcome = store.try_update_site(key, {"name": body.name, "otherDomains": body.domains})
        if outcome.status == SITE_NOT_FOUND:
            raise WebApiError(404, "DPack not found")
        if outcome.status == SITE_INVALID:
            raise WebApiError(422, validation_message(outcome.error))
        return Response(status_code=200)

    return router


def install_webapi(app: FastAPI, store: CanonicalStore, sessions: SessionStore) -> None:
    """Attach the web API routes and their error handler to app."""

    @app.exception_handler(WebApiError)
    async def _web_api_error(_request: Request, exc: WebApiError) -> JSONResponse:
        return JSONResponse({"message": exc.message}, status_code=exc.status_code)

    app.include_router(build_webapi_router(store, sessions))
