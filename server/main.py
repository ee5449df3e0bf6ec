"""
FastAPI server for the end-to-end encrypted messenger.

This server:
- Handles user registration and authentication
- Acts as the public key directory (publish / look up P-256 JWKs)
- Stores message records and relays them to online recipients via WebSocket
- Never decrypts: encrypted records are stored and relayed as received
"""

import logging
from typing import Dict, Optional
from datetime import timedelta
from contextlib import asynccontextmanager
from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Depends
from pydantic import BaseModel, Field, field_validator, model_validator

from e2e.envelope import Envelope
from e2e.primitives import CryptoError, import_public_key
from .config import ACCESS_TOKEN_EXPIRE_MINUTES
from .database import Database
from .auth import create_access_token, verify_token, current_user, Token

logger = logging.getLogger(__name__)


# Pydantic models for API
class UserCredentials(BaseModel):
    username: str = Field(min_length=1, max_length=50, pattern=r"^[A-Za-z0-9_.-]+$")
    password: str = Field(min_length=1, max_length=72)


class PublicKeyUpdate(BaseModel):
    publicKey: str

    @field_validator("publicKey")
    @classmethod
    def check_public_key(cls, value: str) -> str:
        try:
            import_public_key(value)
        except CryptoError as e:
            raise ValueError(f"publicKey is not a valid P-256 JWK: {e}") from e
        return value


class MessageCreate(BaseModel):
    receiver: str
    content: str = ""
    isEncrypted: bool = False
    encryptedContent: Optional[str] = None
    iv: Optional[str] = None

    @model_validator(mode="after")
    def check_shape(self) -> "MessageCreate":
        if self.isEncrypted:
            if not self.encryptedContent or not self.iv:
                raise ValueError("Encrypted messages require encryptedContent and iv")
            try:
                Envelope.decode(self.encryptedContent, self.iv)
            except CryptoError as e:
                raise ValueError(str(e)) from e
        elif not self.content:
            raise ValueError("Plaintext messages require content")
        return self


# WebSocket connection manager
class ConnectionManager:
    """Manages active WebSocket connections"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}

    def register(self, username: str, websocket: WebSocket):
        self.active_connections[username] = websocket

    def disconnect(self, username: str, websocket: Optional[WebSocket] = None) -> bool:
        """
        Remove a WebSocket connection.

        With ``websocket`` given, only that exact connection is removed, so a
        closing old socket never drops a newer one for the same user.

        Returns:
            True if a connection was removed
        """
        current = self.active_connections.get(username)
        if current is None or (websocket is not None and current is not websocket):
            return False
        del self.active_connections[username]
        return True

    async def send_message(self, username: str, message: dict):
        """Send a message to a specific user"""
        websocket = self.active_connections.get(username)
        if websocket is None:
            return
        try:
            await websocket.send_json(message)
        except (RuntimeError, WebSocketDisconnect) as e:
            logger.warning("Dropping push to %s: %s", username, e)
            self.disconnect(username, websocket)

    async def broadcast(self, message: dict, exclude: Optional[str] = None):
        for other_user in list(self.active_connections):
            if other_user != exclude:
                await self.send_message(other_user, message)

    def is_online(self, username: str) -> bool:
        """Check if a user is online"""
        return username in self.active_connections

    def get_online_users(self) -> list[str]:
        """Get list of online users"""
        return list(self.active_connections.keys())


# Initialize database and connection manager
db = Database()
manager = ConnectionManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    await db.create_tables()
    logger.info("Database initialized")
    yield
    await db.dispose()
    logger.info("Server shutting down")


app = FastAPI(
    title="Encrypted Messenger Server",
    description="Public key directory and message relay for end-to-end encrypted chat",
    version="1.0.0",
    lifespan=lifespan
)


def _issue_token(username: str) -> Token:
    access_token = create_access_token(
        data={"sub": username},
        expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    return Token(access_token=access_token, token_type="bearer", username=username)


@app.post("/api/register", response_model=Token)
async def register(user_data: UserCredentials):
    """Register a new user account"""
    user = await db.create_user(username=user_data.username, password=user_data.password)
    if not user:
        raise HTTPException(status_code=400, detail="Username already exists")

    logger.info("Registered user %s", user.username)
    return _issue_token(user.username)


@app.post("/api/login", response_model=Token)
async def login(user_data: UserCredentials):
    """Authenticate a user and return JWT token"""
    user = await db.authenticate_user(user_data.username, user_data.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid username or password")
    return _issue_token(user.username)


@app.get("/api/users")
async def list_users():
    """List all registered users"""
    return {"users": await db.list_users()}


@app.get("/api/users/online")
async def list_online_users():
    """List currently online users"""
    return {"users": manager.get_online_users()}


@app.get("/api/users/{username}")
async def get_user(username: str):
    """
    Look up a user, including their published public key.

    ``publicKey`` is null when the user never published one; clients treat
    that as an unencrypted chat.
    """
    user = await db.get_user(username)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return {"username": user.username, "publicKey": user.public_key}


@app.put("/api/users/{username}/public-key")
async def publish_public_key(username: str, update: PublicKeyUpdate,
                             caller: str = Depends(current_user)):
    """Publish the caller's current public key"""
    if caller != username:
        raise HTTPException(status_code=403, detail="Not authorized")

    user = await db.set_public_key(username, update.publicKey)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    logger.info("Public key updated for %s", username)
    return {"username": user.username, "publicKey": user.public_key}


@app.post("/api/messages", status_code=201)
async def create_message(message: MessageCreate, caller: str = Depends(current_user)):
    """Store a message record and push it to the recipient if online"""
    if not await db.get_user(message.receiver):
        raise HTTPException(status_code=404, detail="Recipient not found")

    record = await db.store_message(
        sender=caller,
        receiver=message.receiver,
        content=message.content if not message.isEncrypted else "",
        is_encrypted=message.isEncrypted,
        encrypted_content=message.encryptedContent if message.isEncrypted else None,
        iv=message.iv if message.isEncrypted else None,
    )
    data = record.to_dict()
    await manager.send_message(message.receiver, {"type": "message", "data": data})
    return data


@app.get("/api/messages")
async def list_messages(peer: str, limit: int = 100, caller: str = Depends(current_user)):
    """Message records between the caller and ``peer``, oldest first"""
    if limit < 1 or limit > 500:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
    messages = await db.get_messages(caller, peer, limit=limit)
    return [m.to_dict() for m in messages]


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for real-time delivery.

    Protocol:
    1. Client sends: {"type": "auth", "token": "jwt_token"}
    2. Server verifies and responds: {"type": "auth_success", "username": "..."}
    3. Server pushes new records: {"type": "message", "data": {...}}
    4. Client may send {"type": "ping"}; server answers {"type": "pong"}
    """
    username = None
    await websocket.accept()

    try:
        auth_data = await websocket.receive_json()
        if not isinstance(auth_data, dict) or auth_data.get("type") != "auth":
            await websocket.send_json({"type": "error", "message": "Authentication required"})
            await websocket.close()
            return

        token = auth_data.get("token")
        username = verify_token(token) if isinstance(token, str) else None
        if not username:
            await websocket.send_json({"type": "error", "message": "Invalid token"})
            await websocket.close()
            return

        manager.register(username, websocket)
        await websocket.send_json({
            "type": "auth_success",
            "username": username,
            "online_users": manager.get_online_users()
        })
        await manager.broadcast({"type": "user_online", "username": username}, exclude=username)

        while True:
            data = await websocket.receive_json()
            if isinstance(data, dict) and data.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
            else:
                await websocket.send_json({"type": "error", "message": "Unsupported message type"})

    except WebSocketDisconnect:
        pass
    except ValueError as e:
        logger.warning("WebSocket protocol error from %s: %s", username or "anonymous", e)
    finally:
        if username and manager.disconnect(username, websocket):
            await manager.broadcast({"type": "user_offline", "username": username})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
