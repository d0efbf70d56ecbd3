"""FastAPI member portal API - auth, membership workflow, and the built web UI."""
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

import config
from portal.errors import PortalError
from portal.models.base import async_session_factory, init_db
from portal.services.otp import purge_expired_challenges
from portal.services.revocation import purge_expired_revocations

from web.access import AccessGateMiddleware
from web.api.admin_routes import router as admin_router
from web.api.auth_routes import router as auth_router
from web.api.member_routes import membership_router, router as member_router
from web.api.organization_routes import router as organization_router
from web.api.superadmin_routes import router as superadmin_router

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("portal.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    async with async_session_factory() as session:
        challenges = await purge_expired_challenges(session)
        revocations = await purge_expired_revocations(session)
    if challenges or revocations:
        logger.info("Purged %s expired OTP challenges and %s expired revocations", challenges, revocations)
    yield


app = FastAPI(title="Member Portal API", lifespan=lifespan)

# SPA fallback: serve index.html for non-API 404s so client-side routes work
_frontend_dist = Path(__file__).resolve().parent.parent / "frontend" / "dist"


class SPAFallbackMiddleware(BaseHTTPMiddleware):
    """Serve index.html for 404s on non-API paths (enables /member/login, /admin/dashboard, etc.)."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        if response.status_code == 404 and not request.url.path.startswith("/api"):
            index_path = _frontend_dist / "index.html"
            if index_path.exists():
                return FileResponse(str(index_path), media_type="text/html")
        return response


@app.exception_handler(PortalError)
async def portal_error_handler(request, exc: PortalError):
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request, exc: StarletteHTTPException):
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request, exc: RequestValidationError):
    """Malformed JSON or a body that does not fit the request model."""
    errors = exc.errors()
    if not errors or errors[0].get("type") == "json_invalid":
        return JSONResponse({"error": "Invalid request body"}, status_code=422)
    first = errors[0]
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    return JSONResponse({"error": f"Invalid {field or 'request'}: {first.get('msg', 'invalid value')}"}, status_code=422)


if _frontend_dist.exists():
    app.add_middleware(SPAFallbackMiddleware)

# Last added is outermost: CORS wraps the gate
app.add_middleware(AccessGateMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(auth_router)
app.include_router(member_router)
app.include_router(membership_router)
app.include_router(admin_router)
app.include_router(superadmin_router)
app.include_router(organization_router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}


# Serve built frontend (SPA fallback handled by SPAFallbackMiddleware above)
if _frontend_dist.exists():
    app.mount("/", StaticFiles(directory=str(_frontend_dist), html=True), name="frontend")
