from fastapi import FastAPI, Depends, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from .config import settings
from .db import SessionLocal, engine, init_db
from .models import User
from .schemas import UserCreate, UserOut, LoginIn, Token, AvatarIn, AttachmentIn, ReplyRef, utcnow
from .auth import (
    get_password_hash, verify_password, create_access_token, get_current_username,
    username_from_token, role_for,
)
from .service import ChatService
from .sessions import Identity
import json
import logging

logger = logging.getLogger(__name__)

app = FastAPI(title="PivoGram Chat Backend")

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Dependency
async def get_db():
    async with SessionLocal() as session:
        yield session

def get_service() -> ChatService:
    return app.state.chat

async def load_identity(db: AsyncSession, username: str) -> Identity | None:
    res = await db.execute(select(User).where(User.username == username))
    user = res.scalar_one_or_none()
    if not user or not user.is_active:
        return None
    return Identity(username=user.username, role=user.role, avatar_url=user.avatar_url)

@app.on_event("startup")
async def on_startup():
    logging.basicConfig(level=settings.log_level.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    await init_db()
    app.state.chat = ChatService(settings, SessionLocal)
    await app.state.chat.start()
    logger.info("chat service ready (default room %s)", settings.default_room)

@app.on_event("shutdown")
async def on_shutdown():
    await app.state.chat.stop()
    await engine.dispose()

@app.get("/health")
async def health():
    return {"status": "ok", "timestamp": utcnow().isoformat()}

# ---------------------- AUTH ----------------------
@app.post("/auth/register", response_model=UserOut)
async def register(payload: UserCreate, db: AsyncSession = Depends(get_db)):
    user = User(username=payload.username, password_hash=get_password_hash(payload.password),
                role=role_for(payload.username))
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=409, detail="Username already exists")
    await db.refresh(user)
    return user

@app.post("/auth/login", response_model=Token)
async def login(payload: LoginIn, db: AsyncSession = Depends(get_db)):
    res = await db.execute(select(User).where(User.username == payload.username.strip()))
    user = res.scalar_one_or_none()
    if not user or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token(user.username)
    return Token(access_token=token, username=user.username)

@app.get("/me", response_model=UserOut)
async def me(username: str = Depends(get_current_username), db: AsyncSession = Depends(get_db)):
    res = await db.execute(select(User).where(User.username == username))
    user = res.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return UserOut.model_validate(user)

@app.post("/me/avatar", response_model=UserOut)
async def set_avatar(body: AvatarIn, username: str = Depends(get_current_username),
                     db: AsyncSession = Depends(get_db), chat: ChatService = Depends(get_service)):
    res = await db.execute(select(User).where(User.username == username))
    user = res.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    user.avatar_url = body.avatar_url
    await db.commit()
    await chat.update_avatar(username, body.avatar_url)
    return UserOut.model_validate(user)

# ---------------------- ROOMS ----------------------
@app.post("/rooms/{room_id}/attachments")
async def post_attachment(room_id: str, body: AttachmentIn, username: str = Depends(get_current_username),
                          db: AsyncSession = Depends(get_db), chat: ChatService = Depends(get_service)):
    identity = await load_identity(db, username)
    if identity is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    room_id = room_id.strip()
    if not room_id:
        raise HTTPException(status_code=400, detail="roomId is required")
    reply = None
    if body.reply_to_id is not None:
        reply = ReplyRef(target_message_id=body.reply_to_id, target_author=body.reply_to_username,
                         snippet=body.reply_to_snippet)
    message = await chat.post_attachment(identity, room_id, body.image_url, reply)
    return {"ok": True, "message": message.wire()}

@app.get("/rtc/config")
async def rtc_config():
    ice_servers = []
    if settings.stun_servers:
        for stun in settings.stun_servers.split(","):
            ice_servers.append({"urls": stun.strip()})
    if settings.turn_uri and settings.turn_username and settings.turn_password:
        ice_servers.append({
            "urls": settings.turn_uri,
            "username": settings.turn_username,
            "credential": settings.turn_password,
        })
    return {"iceServers": ice_servers}

# ---------------------- WEBSOCKET ----------------------
# One socket per connection. Frames are {"event": name, "data": payload} both ways.
@app.websocket("/ws")
async def ws_events(ws: WebSocket):
    username = username_from_token(ws.query_params.get("token"))
    if not username:
        await ws.close(code=4401)
        return
    async with SessionLocal() as db:
        identity = await load_identity(db, username)
    if identity is None:
        await ws.close(code=4401)
        return

    await ws.accept()
    chat: ChatService = app.state.chat
    conn_id = await chat.connect(ws, identity, invite=ws.query_params.get("invite"))

    try:
        while True:
            raw = await ws.receive_text()
            try:
                msg = json.loads(raw)
            except ValueError:
                await ws.send_text(json.dumps({"event": "error", "data": {"message": "invalid json"}}))
                continue
            if not isinstance(msg, dict):
                await ws.send_text(json.dumps({"event": "error", "data": {"message": "unknown message"}}))
                continue
            await chat.handle(conn_id, msg.get("event"), msg.get("data"))
    except WebSocketDisconnect:
        pass
    finally:
        await chat.disconnect(conn_id)
