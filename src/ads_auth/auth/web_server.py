"""
FastAPI routes exposing the ad platform OAuth flows.

The routes only extract parameters and the caller identity; every check
happens in ``AdPlatformAuthenticator``. Caller authentication is handled
upstream, which forwards the user id in the ``X-User-Id`` header.
"""
from typing import List, Optional

from fastapi import Body, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..config.settings import settings
from ..utils.logger import logger
from .authenticator import AdPlatformAuthenticator
from .errors import (
    ConfigurationError,
    MissingCredentialsError,
    NotAuthenticatedError,
    ReauthRequiredError,
    StateValidationError,
    TokenExchangeError,
)
from .token_refresh_worker import TokenRefreshWorker


class RefreshRequest(BaseModel):
    platforms: Optional[List[str]] = None


def _error(status_code: int, error: str, exc) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "platform": exc.platform, "message": exc.message},
    )


def create_app(
    authenticator: Optional[AdPlatformAuthenticator] = None,
    start_worker: bool = True,
) -> FastAPI:
    """
    Build the OAuth web app.

    Args:
        authenticator: Facade to serve (defaults to one built from settings)
        start_worker: Run the background refresh worker while the app is up

    Returns:
        FastAPI application
    """
    authenticator = authenticator or AdPlatformAuthenticator.from_settings()
    worker = TokenRefreshWorker(authenticator) if start_worker else None

    app = FastAPI(
        title="Ads Platform OAuth Server",
        description="OAuth endpoints for Google Ads, Facebook, Instagram and Meta",
        version="1.0.0"
    )
    app.state.authenticator = authenticator

    # CORS middleware (adjust for production)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if not settings.is_production else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_event():
        """Start background workers on startup."""
        if worker:
            try:
                worker.start()
            except Exception as e:
                logger.warning(f"Failed to start token refresh worker: {e}")
        logger.info("OAuth web server started")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Stop background workers and close outbound sessions."""
        if worker:
            worker.stop()
        await authenticator.close()
        logger.info("OAuth web server stopped")

    @app.exception_handler(StateValidationError)
    async def state_error_handler(request: Request, exc: StateValidationError):
        return _error(401, "invalid_state", exc)

    @app.exception_handler(NotAuthenticatedError)
    async def not_authenticated_handler(request: Request, exc: NotAuthenticatedError):
        return _error(401, "not_authenticated", exc)

    @app.exception_handler(ReauthRequiredError)
    async def reauth_handler(request: Request, exc: ReauthRequiredError):
        return JSONResponse(status_code=401, content=exc.to_dict())

    @app.exception_handler(ConfigurationError)
    async def configuration_handler(request: Request, exc: ConfigurationError):
        if isinstance(exc, MissingCredentialsError):
            logger.error(f"OAuth not configured: {exc.message}")
            return _error(503, "not_configured", exc)
        return _error(404, "not_found", exc)

    @app.exception_handler(TokenExchangeError)
    async def exchange_error_handler(request: Request, exc: TokenExchangeError):
        return _error(400, "token_exchange_failed", exc)

    @app.get("/health")
    async def health():
        return {"status": "ok", "platforms": authenticator.registry.supported_platforms()}

    @app.get("/auth/cases/{auth_case}/urls")
    async def auth_case_urls(auth_case: str, x_user_id: str = Header(...)):
        """Authorization URLs for every platform of an auth case."""
        return {
            "auth_case": auth_case,
            "urls": authenticator.build_auth_urls_for_case(auth_case, x_user_id),
        }

    @app.get("/auth/cases/{auth_case}/status")
    async def auth_case_status(auth_case: str, x_user_id: str = Header(...)):
        status = await authenticator.is_authenticated(x_user_id, auth_case)
        return status.to_dict()

    @app.get("/auth/status")
    async def auth_status(x_user_id: str = Header(...)):
        status = await authenticator.get_user_auth_status(x_user_id)
        return status.to_dict()

    @app.post("/auth/refresh")
    async def refresh_tokens(
        x_user_id: str = Header(...),
        body: Optional[RefreshRequest] = Body(None),
    ):
        """Refresh the caller's expiring tokens."""
        result = await authenticator.refresh_all_user_tokens(
            x_user_id, body.platforms if body else None
        )
        return result.to_dict()

    @app.get("/auth/{platform}/url")
    async def auth_url(platform: str, x_user_id: str = Header(...)):
        return {"platform": platform, "url": authenticator.build_auth_url(platform, x_user_id)}

    @app.get("/auth/{platform}/callback")
    async def auth_callback(
        platform: str,
        x_user_id: str = Header(...),
        code: Optional[str] = Query(None),
        state: Optional[str] = Query(None),
        error: Optional[str] = Query(None),
        error_description: Optional[str] = Query(None),
    ):
        """OAuth redirect target."""
        if error:
            logger.warning(f"{platform} OAuth error for user {x_user_id}: {error} {error_description or ''}")
            raise HTTPException(status_code=400, detail=f"OAuth error: {error_description or error}")
        if not code:
            raise HTTPException(status_code=400, detail="Missing authorization code")

        result = await authenticator.handle_callback(platform, code, state, x_user_id)
        return result.to_dict()

    @app.delete("/auth/{platform}")
    async def disconnect(platform: str, x_user_id: str = Header(...)):
        deleted = await authenticator.disconnect(x_user_id, platform)
        return {"platform": platform, "disconnected": deleted}

    @app.get("/auth/{platform}/accounts")
    async def ad_accounts(platform: str, x_user_id: str = Header(...)):
        accounts = await authenticator.list_ad_accounts(x_user_id, platform)
        return {"platform": platform, "accounts": [account.to_dict() for account in accounts]}

    return app
