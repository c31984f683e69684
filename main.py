import asyncio
import time
from typing import Any, Callable, Dict, Optional

from fastapi import Body, Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.errors import PyMongoError

from auth import AuthService, Identity
from config import settings
from database import db, store as default_store
from exceptions import (
    AuthenticationError,
    DoubtNotFoundError,
    PartialSignupError,
    StudySyncError,
    error_response,
)
from feeds import (
    DoubtDetail,
    answer_card,
    answers_query,
    doubt_card,
    doubts_feed,
    doubts_query,
    load_dashboard,
    notes_feed,
    notes_query,
    post_answer,
    post_doubt,
    resolve_doubt,
    resource_card,
    share_resource,
)
from forms import AnswerForm, DoubtForm, FormState, LoginForm, ResourceForm, SignupForm
from live_query import LiveQuery
from logging_config import generate_request_id, get_request_id, logger, set_request_id, set_user_id
from schemas import DOUBTS, USERS, Answer, Doubt, Resource, UserProfile, decode_record, decode_records

app = FastAPI(title=settings.APP_NAME, debug=settings.DEBUG)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

auth_service = AuthService(default_store)
bearer = HTTPBearer(auto_error=False)


# ----------------------- Dependencies -----------------------

def get_store():
    return default_store


def get_auth() -> AuthService:
    return auth_service


def get_optional_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    auth: AuthService = Depends(get_auth),
) -> Optional[Identity]:
    if credentials is None:
        return None
    identity = auth.identity_for(credentials.credentials)
    set_user_id(identity.uid)
    return identity


def get_current_identity(identity: Optional[Identity] = Depends(get_optional_identity)) -> Identity:
    if identity is None:
        raise AuthenticationError("You need to be logged in.")
    return identity


# ----------------------- Lifecycle, middleware, errors -----------------------

@app.on_event("startup")
def startup_event():
    if settings.CREATE_INDEXES_ON_STARTUP and db is not None:
        try:
            default_store.ensure_indexes()
        except PyMongoError as e:
            logger.warning(f"Could not create indexes: {e}")


@app.on_event("shutdown")
def shutdown_event():
    # live feeds still open drop their viewer identity
    auth_service.close()


@app.middleware("http")
async def request_context(request: Request, call_next):
    set_request_id(request.headers.get("x-request-id") or generate_request_id())
    started = time.monotonic()
    response = await call_next(request)
    logger.log_request(request.method, request.url.path, response.status_code, (time.monotonic() - started) * 1000)
    response.headers["X-Request-ID"] = get_request_id()
    return response


@app.exception_handler(StudySyncError)
async def studysync_error_handler(request: Request, exc: StudySyncError):
    if exc.status_code >= 500:
        logger.log_error_with_context(exc, f"{request.method} {request.url.path}")
    return JSONResponse(status_code=exc.status_code, content=error_response(exc))


def _form_response(state: FormState, result: Optional[Dict[str, Any]] = None, status_code: int = 201) -> JSONResponse:
    body = state.to_dict()
    if state.field_errors:
        return JSONResponse(status_code=422, content=body)
    if state.error is not None:
        return JSONResponse(status_code=state.error.status_code, content=body)
    body.update(result or {})
    return JSONResponse(status_code=status_code, content=body)


def _get_doubt(store, doubt_id: str) -> Doubt:
    raw = store.get(DOUBTS, doubt_id)
    if raw is None:
        raise DoubtNotFoundError(doubt_id)
    return decode_record(Doubt, raw, DOUBTS)


# ----------------------- Basic routes -----------------------

@app.get("/")
def root():
    return {"message": "StudySync API running"}


@app.get("/test")
def test_database():
    info: Dict[str, Any] = {
        "backend": "running",
        "database": "not configured" if db is None else "configured",
        "collections": [],
    }
    if db is not None:
        try:
            info["collections"] = db.list_collection_names()[:10]
            info["database"] = "connected"
        except PyMongoError as e:
            info["database"] = "error"
            info["error"] = str(e)[:200]
    return info


# ----------------------- Auth -----------------------

@app.post("/api/auth/signup", status_code=201)
async def signup(payload: Dict[str, Any] = Body(...), auth: AuthService = Depends(get_auth)):
    state = FormState(SignupForm, payload)
    await state.submit(auth.sign_up)
    if isinstance(state.error, PartialSignupError):
        # the account exists even though the profile is missing
        return JSONResponse(status_code=201, content={
            **state.to_dict(),
            "profile_saved": False,
            "session": state.error.session.to_dict(),
        })
    result = {"profile_saved": True, "session": state.result.to_dict()} if state.ok else None
    return _form_response(state, result)


@app.post("/api/auth/login")
async def login(payload: Dict[str, Any] = Body(...), auth: AuthService = Depends(get_auth)):
    state = FormState(LoginForm, payload)
    await state.submit(lambda form: auth.authenticate(form.email, form.password))
    result = {"session": state.result.to_dict()} if state.ok else None
    return _form_response(state, result, status_code=200)


@app.post("/api/auth/logout")
def logout(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    auth: AuthService = Depends(get_auth),
):
    if credentials is None:
        raise AuthenticationError("You need to be logged in.")
    auth.sign_out(credentials.credentials)
    return {"success": True}


@app.get("/api/auth/me")
def me(identity: Identity = Depends(get_current_identity), store=Depends(get_store)):
    raw = store.get(USERS, identity.uid)
    profile = decode_record(UserProfile, raw, USERS) if raw else None
    return {
        "uid": identity.uid,
        "email": identity.email,
        "display_name": identity.display_name,
        "profile": profile.model_dump(mode="json") if profile else None,
    }


# ----------------------- Doubts -----------------------

@app.get("/api/doubts")
def list_doubts(identity: Optional[Identity] = Depends(get_optional_identity), store=Depends(get_store)):
    doubts = decode_records(Doubt, store.query(doubts_query()), DOUBTS)
    return {"items": [doubt_card(d, identity) for d in doubts]}


@app.post("/api/doubts", status_code=201)
async def create_doubt(
    payload: Dict[str, Any] = Body(...),
    identity: Identity = Depends(get_current_identity),
    store=Depends(get_store),
):
    state = FormState(DoubtForm, payload)
    await state.submit(lambda form: post_doubt(store, identity, form))
    return _form_response(state, {"id": state.result} if state.ok else None)


@app.post("/api/doubts/{doubt_id}/resolve")
def resolve(doubt_id: str, identity: Identity = Depends(get_current_identity), store=Depends(get_store)):
    doubt = _get_doubt(store, doubt_id)
    resolve_doubt(store, doubt, identity)
    return {"success": True, "doubt_id": doubt_id, "is_resolved": True}


@app.get("/api/doubts/{doubt_id}/answers")
def list_answers(doubt_id: str, store=Depends(get_store)):
    answers = decode_records(Answer, store.query(answers_query(doubt_id)), "answers")
    return {"items": [answer_card(a) for a in answers]}


@app.post("/api/doubts/{doubt_id}/answers", status_code=201)
async def create_answer(
    doubt_id: str,
    payload: Dict[str, Any] = Body(...),
    identity: Identity = Depends(get_current_identity),
    store=Depends(get_store),
):
    def write(form: AnswerForm) -> str:
        # validate doubt exists
        _get_doubt(store, doubt_id)
        return post_answer(store, identity, doubt_id, form)

    state = FormState(AnswerForm, payload)
    await state.submit(write)
    return _form_response(state, {"id": state.result} if state.ok else None)


# ----------------------- Resources -----------------------

@app.get("/api/notes")
def list_notes(store=Depends(get_store)):
    resources = decode_records(Resource, store.query(notes_query()), "notes")
    return {"items": [resource_card(r) for r in resources]}


@app.post("/api/notes", status_code=201)
async def create_note(
    payload: Dict[str, Any] = Body(...),
    identity: Identity = Depends(get_current_identity),
    store=Depends(get_store),
):
    state = FormState(ResourceForm, payload)
    await state.submit(lambda form: share_resource(store, identity, form))
    return _form_response(state, {"id": state.result} if state.ok else None)


# ----------------------- Dashboard -----------------------

@app.get("/api/dashboard")
async def dashboard(identity: Identity = Depends(get_current_identity), store=Depends(get_store)):
    tabs = await load_dashboard(store, identity)
    return {
        "display_name": identity.display_name,
        "tabs": [tab.to_dict() for tab in tabs],
    }


# ----------------------- Live feeds -----------------------

async def _stream(websocket: WebSocket, live: LiveQuery, render: Callable[[Any], Dict[str, Any]]) -> None:
    """Send every snapshot of `live` until the client leaves or the feed fails."""
    await websocket.accept()
    live.start()

    async def pump():
        async for outcome in live:
            await websocket.send_json(outcome.to_dict(render))

    async def wait_for_disconnect():
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass

    pump_task = asyncio.create_task(pump())
    disconnect_task = asyncio.create_task(wait_for_disconnect())
    tasks = {pump_task, disconnect_task}
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        if pending:
            # a cancel of this handler must surface here at once
            await asyncio.wait(pending)
        if pump_task in done:
            error = pump_task.exception()
            if error is None:
                # feed ended after a sticky failure
                await websocket.close()
            elif not isinstance(error, WebSocketDisconnect):
                logger.log_error_with_context(error, f"live feed {live.spec.collection}")
    finally:
        live.cancel()
        for task in tasks:
            task.cancel()


@app.websocket("/ws/doubts")
async def doubts_socket(
    websocket: WebSocket,
    token: Optional[str] = None,
    store=Depends(get_store),
    auth: AuthService = Depends(get_auth),
):
    viewer: Dict[str, Optional[Identity]] = {"identity": None}

    def on_identity(identity: Optional[Identity]) -> None:
        viewer["identity"] = identity

    # signing out elsewhere hides the resolve button from the next snapshot on
    unsubscribe = await asyncio.to_thread(auth.subscribe_identity, token, on_identity)
    try:
        await _stream(websocket, doubts_feed(store), lambda d: doubt_card(d, viewer["identity"]))
    finally:
        unsubscribe()


@app.websocket("/ws/doubts/{doubt_id}/answers")
async def answers_socket(websocket: WebSocket, doubt_id: str, store=Depends(get_store)):
    try:
        doubt = await asyncio.to_thread(_get_doubt, store, doubt_id)
    except StudySyncError as e:
        await websocket.accept()
        await websocket.send_json({"status": "error", "error": e.to_dict()})
        await websocket.close()
        return
    detail = DoubtDetail(store, doubt)
    await _stream(websocket, detail.answers, answer_card)


@app.websocket("/ws/notes")
async def notes_socket(websocket: WebSocket, store=Depends(get_store)):
    await _stream(websocket, notes_feed(store), resource_card)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
