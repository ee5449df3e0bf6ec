"""
Database models and operations for the chat server.

Uses SQLAlchemy with SQLite for user accounts, published public keys and
message records. Encrypted records are stored exactly as the client sent
them; the server holds no key material able to read them.
"""

from datetime import datetime, timezone
from typing import Optional, List
from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, select, or_, and_
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from passlib.context import CryptContext

from .config import DATABASE_URL

Base = declarative_base()
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """User account model"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    public_key = Column(Text, nullable=True)  # P-256 JWK, null until published
    created_at = Column(DateTime, default=_utcnow)
    is_active = Column(Boolean, default=True)

    def verify_password(self, password: str) -> bool:
        """Verify password against hash"""
        return pwd_context.verify(password, self.hashed_password)

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash a password"""
        return pwd_context.hash(password)


class Message(Base):
    """Message record; either plaintext content or an encrypted envelope"""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    sender = Column(String(50), index=True, nullable=False)
    receiver = Column(String(50), index=True, nullable=False)
    content = Column(Text, nullable=False, default="")
    is_encrypted = Column(Boolean, nullable=False, default=False)
    encrypted_content = Column(Text, nullable=True)  # {"ciphertext", "senderPublicKey"}
    iv = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'sender': self.sender,
            'receiver': self.receiver,
            'content': self.content,
            'isEncrypted': self.is_encrypted,
            'encryptedContent': self.encrypted_content,
            'iv': self.iv,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
        }


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = DATABASE_URL):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    async def create_user(self, username: str, password: str) -> Optional[User]:
        """
        Create a new user account.

        Returns:
            Created User object or None if username exists
        """
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            if result.scalar_one_or_none():
                return None

            user = User(
                username=username,
                hashed_password=User.hash_password(password),
            )
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    async def get_user(self, username: str) -> Optional[User]:
        """Get user by username"""
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            return result.scalar_one_or_none()

    async def authenticate_user(self, username: str, password: str) -> Optional[User]:
        """
        Authenticate a user.

        Returns:
            User object if authenticated, None otherwise
        """
        user = await self.get_user(username)
        if not user or not user.verify_password(password):
            return None
        return user

    async def set_public_key(self, username: str, public_key: str) -> Optional[User]:
        """
        Publish (or replace) a user's public key.

        Returns:
            Updated User, or None if the user does not exist
        """
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            user = result.scalar_one_or_none()
            if not user:
                return None

            user.public_key = public_key
            await session.commit()
            await session.refresh(user)
            return user

    async def list_users(self) -> List[str]:
        """List all registered usernames"""
        async with self.async_session() as session:
            result = await session.execute(select(User.username).where(User.is_active.is_(True)))
            return [row[0] for row in result.all()]

    async def store_message(self, sender: str, receiver: str, content: str,
                            is_encrypted: bool, encrypted_content: Optional[str],
                            iv: Optional[str]) -> Message:
        """Persist a message record"""
        async with self.async_session() as session:
            message = Message(
                sender=sender,
                receiver=receiver,
                content=content,
                is_encrypted=is_encrypted,
                encrypted_content=encrypted_content,
                iv=iv,
            )
            session.add(message)
            await session.commit()
            await session.refresh(message)
            return message

    async def get_messages(self, username: str, peer: str, limit: int = 100) -> List[Message]:
        """
        Messages exchanged between two users, oldest first.
        """
        async with self.async_session() as session:
            result = await session.execute(
                select(Message)
                .where(or_(
                    and_(Message.sender == username, Message.receiver == peer),
                    and_(Message.sender == peer, Message.receiver == username),
                ))
                .order_by(Message.id.desc())
                .limit(limit)
            )
            return list(reversed(result.scalars().all()))
