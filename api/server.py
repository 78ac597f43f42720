import os
import re
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from api.db import CredentialError, InstrumentStore, conn, require_write_access
from jobs.poll import PollRequest, run_poller
from rules.sources import ConfigError, load_domain, pollers

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("api.server")

# ------------------------------------------------------------------------------
# App
# ------------------------------------------------------------------------------
app = FastAPI(title="Regulatory Poller API", version="0.3")

# swapped out in tests
store_factory = InstrumentStore

# ------------------------------------------------------------------------------
# CORS (reflect allowed origins, otherwise the production default)
#   - Add origins with ALLOWED_CORS_ORIGINS as a comma-separated list.
#   - Any https://<name>.vercel.app preview host is allowed.
# ------------------------------------------------------------------------------
EXACT_ORIGINS = [
    "https://thynkflow.io",
    "https://www.thynkflow.io",
    "http://localhost:3000",
    "http://localhost:5173",
    "http://localhost:5174",
]
DEFAULT_ORIGIN = EXACT_ORIGINS[0]
_env_origins = [o.strip() for o in os.getenv("ALLOWED_CORS_ORIGINS", "").split(",") if o.strip()]
ALLOWED_ORIGINS: List[str] = EXACT_ORIGINS + _env_origins
VERCEL_RE = re.compile(r"^https://[\w-]+\.vercel\.app$")

BASE_CORS_HEADERS = {
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Credentials": "true",
    "Access-Control-Max-Age": "86400",
}


def is_allowed_origin(origin: Optional[str]) -> bool:
    if not origin:
        return False
    return origin in ALLOWED_ORIGINS or bool(VERCEL_RE.match(origin))


def cors_headers(origin: Optional[str]) -> Dict[str, str]:
    return {**BASE_CORS_HEADERS, "Access-Control-Allow-Origin": origin if is_allowed_origin(origin) else DEFAULT_ORIGIN}


@app.middleware("http")
async def _cors(request: Request, call_next):
    headers = cors_headers(request.headers.get("origin"))
    if request.method == "OPTIONS":
        return Response(status_code=204, headers=headers)
    resp = await call_next(request)
    resp.headers.update(headers)
    return resp

# ------------------------------------------------------------------------------
# Security headers (lightweight)
# ------------------------------------------------------------------------------
@app.middleware("http")
async def _security_headers(request, call_next):
    resp = await call_next(request)
    resp.headers["X-Content-Type-Options"] = "nosniff"
    resp.headers["Referrer-Policy"] = "no-referrer-when-downgrade"
    return resp

# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------
class PollBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    state_code: Optional[str] = Field(None, alias="stateCode")
    full_scan: bool = Field(False, alias="fullScan")
    session_id: Optional[str] = Field(None, alias="sessionId")
    source_name: Optional[str] = Field(None, alias="sourceName")


async def _json_body(request: Request) -> Dict[str, Any]:
    """Missing or unparseable bodies count as {}."""
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _fail(status: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"success": False, "error": error})

# ------------------------------------------------------------------------------
# Health endpoints
# ------------------------------------------------------------------------------
@app.get("/livez")
def livez():
    """Simple liveness probe."""
    return {"ok": True}

@app.get("/healthz")
def healthz():
    """Readiness probe: DB connectivity without leaking internals."""
    try:
        with conn() as c, c.cursor() as cur:
            cur.execute("SELECT 1")
            cur.fetchone()
        return {"ok": True}
    except Exception:
        log.exception("DB health check failed")
        raise HTTPException(status_code=500, detail="DB check failed")

# ------------------------------------------------------------------------------
# Poller triggers
# ------------------------------------------------------------------------------
@app.post("/{poller}")
async def trigger(poller: str, request: Request):
    try:
        domain = pollers().get(poller)
    except ConfigError as e:
        log.error(f"[CONFIG] {poller}: {e}")
        return _fail(500, str(e))
    if domain is None:
        return _fail(404, f"Unknown poller: {poller}")

    try:
        body = PollBody.model_validate(await _json_body(request))
    except ValidationError as e:
        return _fail(400, f"Invalid request body: {e.errors(include_url=False)}")

    try:
        require_write_access()
    except CredentialError as e:
        log.error(f"[AUTH] {poller}: {e}")
        return _fail(403, str(e))
    except ConfigError as e:
        log.error(f"[CONFIG] {poller}: {e}")
        return _fail(500, str(e))

    req = PollRequest(
        state_code=body.state_code,
        full_scan=body.full_scan,
        session_id=body.session_id,
        source_name=body.source_name,
    )
    try:
        summary = await run_in_threadpool(run_poller, load_domain(domain), store_factory(), req)
    except Exception as e:
        log.exception(f"Poller {poller} failed")
        return _fail(500, str(e))
    return summary.to_response()
