# sentinel/core/app.py
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from sentinel.core.config import Settings, load_settings
from sentinel.core.errors import FlowBusy, SentinelError, StorageCorrupt
from sentinel.db.accounts import CredentialStore
from sentinel.db.store import KeyValueStore
from sentinel.services.analysis_service import AnalysisService
from sentinel.services.assistant_service import AssistantBridge, AssistantService, build_context
from sentinel.services.device_service import DeviceCollector
from sentinel.services.session_service import SessionManager
from sentinel.services.verification_service import VerificationFlow
from sentinel.utils.ip_lookup import PublicIPService

# ---------------- Config ----------------
SETTINGS = load_settings()

logging.basicConfig(level=SETTINGS.log_level, format="%(asctime)s %(levelname)s [%(name)s.%(funcName)s] %(message)s")
log = logging.getLogger(__name__)
log.info("Loaded config from: %s", SETTINGS.cfg_file_used or "<defaults>")

# ---------------- Request bodies ----------------
class RegisterRequest(BaseModel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)

class LoginRequest(BaseModel):
    email: str
    password: str

class ImageRequest(BaseModel):
    image: str = Field(min_length=1)  # base64 or data: URL

class AssistantRequest(BaseModel):
    message: str = Field(min_length=1)
    view: str = "dashboard"


@dataclass
class Services:
    kv: KeyValueStore
    accounts: CredentialStore
    sessions: SessionManager
    devices: DeviceCollector
    flow: VerificationFlow
    assistant: AssistantBridge


def build_services(settings: Settings,
                   analysis: Optional[AnalysisService] = None,
                   assistant: Optional[AssistantService] = None,
                   ip_service: Optional[PublicIPService] = None) -> Services:
    kv = KeyValueStore(settings.db_path)
    accounts = CredentialStore(
        kv,
        digest_scheme=settings.digest_scheme,
        device_history_cap=settings.device_history_cap,
        dedup_window_ms=settings.device_dedup_window_ms,
        max_verification_results=settings.max_verification_results,
    )
    sessions = SessionManager(kv, accounts)
    ip_service = ip_service or PublicIPService(
        settings.ip_lookup_url, settings.ip_lookup_timeout_sec, settings.ip_lookup_cache_ttl)
    analysis = analysis or AnalysisService(settings.analysis_api_key, settings.analysis_model)
    assistant = assistant or AssistantService(settings.analysis_api_key, settings.assistant_model)
    return Services(
        kv=kv,
        accounts=accounts,
        sessions=sessions,
        devices=DeviceCollector(ip_service, accounts, sessions),
        flow=VerificationFlow(analysis.analyze, accounts, sessions,
                              scan_delay_ms=settings.scan_delay_ms,
                              analysis_timeout_sec=settings.analysis_timeout_sec),
        assistant=AssistantBridge(assistant),
    )


def create_app(settings: Settings = SETTINGS, **overrides) -> FastAPI:
    """Build the app; `overrides` replace the oracle / network collaborators (tests)."""
    svc = build_services(settings, **overrides)

    # ---- DB startup / shutdown ----
    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await svc.kv.init()
        log.info("DB initialized at %s", settings.db_path)
        try:
            session = await svc.sessions.bootstrap()
            log.info("Startup session: %s", session.id if session else "<none>")
        except StorageCorrupt as e:
            log.error("Session not restored: %s", e)
        yield
        try:
            svc.flow.reset()
        except FlowBusy:
            log.warning("Shutting down with an analysis in flight")
        await svc.kv.close()

    app = FastAPI(title="Sentinel Identity Agent",
                  description="Document + selfie identity verification with a local account and device-security store",
                  lifespan=lifespan)
    app.state.services = svc

    @app.exception_handler(SentinelError)
    async def _sentinel_error(request: Request, exc: SentinelError):
        return JSONResponse({"detail": exc.message, "error": exc.code}, status_code=exc.status_code)

    def _session_json():
        current = svc.sessions.current
        return current.to_dict() if current else None

    # ---------------- Basic routes ----------------
    @app.get("/health", tags=["system"], summary="Liveness probe")
    async def health():
        return {"ok": True}

    # ---------------- Accounts ----------------
    @app.post("/auth/register", tags=["auth"], summary="Create an account (does not sign in)")
    async def register(body: RegisterRequest):
        account = await svc.accounts.register(body.name, body.email, body.password)
        return JSONResponse({"account": account.to_dict()}, status_code=201)

    @app.post("/auth/login", tags=["auth"], summary="Sign in and record this device")
    async def login(body: LoginRequest, req: Request):
        account = await svc.accounts.authenticate(body.email, body.password)
        current = svc.sessions.current
        if current is None or current.id != account.id:
            # an attempt started under another (or no) session is not this user's
            svc.flow.detach()
        session = await svc.sessions.login(account)
        device, session = await svc.devices.collect_and_record(req.headers.get("user-agent", ""), session)
        return {"session": session.to_dict() if session else None, "device": device.to_dict()}

    @app.post("/auth/logout", tags=["auth"], summary="Sign out and discard the session")
    async def logout():
        await svc.sessions.logout()
        svc.assistant.clear()
        svc.devices.forget()
        # a running analysis still lands on the account that started it
        svc.flow.detach()
        return {"session": None}

    # ---------------- Session ----------------
    @app.get("/session", tags=["session"], summary="Current session projection")
    async def get_session():
        return {"session": _session_json()}

    @app.post("/session/bootstrap", tags=["session"], summary="Restore the session and collect device intel")
    async def bootstrap(req: Request):
        session = await svc.sessions.bootstrap()
        device, session = await svc.devices.collect_and_record(req.headers.get("user-agent", ""), session)
        return {"session": session.to_dict() if session else None, "device": device.to_dict()}

    @app.get("/device", tags=["session"], summary="Last collected device fingerprint")
    async def get_device():
        fp = svc.devices.last_fingerprint
        return {"device": fp.to_dict() if fp else None}

    # ---------------- Verification flow ----------------
    @app.get("/verification", tags=["verification"], summary="Current verification state")
    async def get_verification():
        return {"verification": svc.flow.state.to_dict()}

    @app.post("/verification/reset", tags=["verification"], summary="Start over / retry")
    async def reset_verification():
        return {"verification": svc.flow.reset().to_dict()}

    @app.post("/verification/document", tags=["verification"], summary="Submit the identity document image")
    async def submit_document(body: ImageRequest):
        state = await svc.flow.submit_document(body.image)
        return {"verification": state.to_dict()}

    @app.post("/verification/selfie", tags=["verification"], summary="Submit the selfie and run the analysis")
    async def submit_selfie(body: ImageRequest):
        session = await svc.flow.submit_selfie(body.image, svc.sessions.current)
        return {"verification": svc.flow.state.to_dict(), "session": session.to_dict() if session else None}

    # ---------------- Assistant ----------------
    @app.post("/assistant/message", tags=["assistant"], summary="Ask the support assistant")
    async def assistant_message(body: AssistantRequest):
        context = build_context(svc.sessions.current, svc.flow.state, body.view)
        answer = await svc.assistant.send(body.message, context)
        return {"reply": answer.text, "messages": [m.to_dict() for m in svc.assistant.messages]}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("sentinel.core.app:app", host="127.0.0.1", port=8000, reload=True)
