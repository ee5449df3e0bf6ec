#!/usr/bin/env python3
"""
CLI Client for the End-to-End Encrypted Messenger

Provides a command-line interface for:
- User registration and login
- Publishing this device's public key to the server directory
- Opportunistically encrypted messaging (plaintext when the peer has no key)
- Decrypting history and pushed messages
"""

import argparse
import asyncio
import json
import logging
import sys
import getpass
from typing import Optional, Dict
import websockets
import httpx
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from e2e.orchestrator import E2EEncryption, display_content
from e2e.primitives import CryptoError
from client.storage import SqliteKeyStore

logger = logging.getLogger(__name__)

DIRECTORY_TIMEOUT = 10.0

HELP_TEXT = """Commands:
  /chat <username> - Start chat with user
  /exit - Exit current chat
  /users - List all users
  /online - List online users
  /history - Reload history of current chat
  /reset-keys - Generate a new key pair and publish it
  /quit - Quit application"""


class ChatClient:
    """
    End-to-end encrypted chat client.
    """

    def __init__(self, server_url: str = "http://localhost:8000",
                 data_dir: str = "client_data", require_encryption: bool = False):
        """
        Initialize chat client.

        Args:
            server_url: Base URL of the chat server
            data_dir: Directory for the local key store
            require_encryption: Refuse to send plaintext to peers without a key
        """
        self.server_url = server_url
        self.ws_url = server_url.replace("http", "ws", 1) + "/ws"
        self.data_dir = data_dir
        self.require_encryption = require_encryption
        self.username: Optional[str] = None
        self.token: Optional[str] = None
        self.key_store: Optional[SqliteKeyStore] = None
        self.encryption: Optional[E2EEncryption] = None
        self.peer_keys: Dict[str, Optional[str]] = {}
        self.websocket = None
        self.http_client = httpx.AsyncClient(timeout=DIRECTORY_TIMEOUT)
        self.running = False
        self.current_chat: Optional[str] = None

    @property
    def _auth_headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"}

    async def _authenticate(self, endpoint: str, username: str, password: str) -> bool:
        try:
            response = await self.http_client.post(
                f"{self.server_url}/api/{endpoint}",
                json={"username": username, "password": password}
            )
        except httpx.HTTPError as e:
            print(f"{endpoint.capitalize()} error: {e}")
            return False

        if response.status_code != 200:
            detail = response.json().get('detail', 'Unknown error')
            print(f"{endpoint.capitalize()} failed: {detail}")
            return False

        self.token = response.json()["access_token"]
        self.username = username

        self.key_store = SqliteKeyStore(username, self.data_dir)
        try:
            unlocked = self.key_store.unlock(password)
        except CryptoError as e:
            print(f"Failed to open key storage: {e}")
            return False
        if not unlocked:
            print("Failed to unlock key storage")
            return False
        self.encryption = E2EEncryption(self.key_store)

        return await self.publish_public_key()

    async def register(self, username: str, password: str) -> bool:
        """Register a new user account and publish its public key"""
        if await self._authenticate("register", username, password):
            print(f"Registration successful! Welcome, {username}")
            return True
        return False

    async def login(self, username: str, password: str) -> bool:
        """Login with an existing account and (re)publish its public key"""
        if await self._authenticate("login", username, password):
            print(f"Login successful! Welcome back, {username}")
            return True
        return False

    async def publish_public_key(self) -> bool:
        """Create the key pair if needed and publish its public half"""
        try:
            public_key = self.encryption.get_public_key(self.username)
            response = await self.http_client.put(
                f"{self.server_url}/api/users/{self.username}/public-key",
                json={"publicKey": public_key},
                headers=self._auth_headers
            )
        except (httpx.HTTPError, CryptoError) as e:
            print(f"Failed to publish public key: {e}")
            return False

        if response.status_code != 200:
            print(f"Failed to publish public key: {response.text}")
            return False
        return True

    async def reset_keys(self):
        """Rotate this device's key pair"""
        try:
            self.encryption.keys.reset_key_pair(self.username)
        except CryptoError as e:
            print(f"Failed to reset keys: {e}")
            return
        if await self.publish_public_key():
            print("New key pair published. Messages encrypted to the old key can no longer be read.")

    async def fetch_peer_key(self, peer: str) -> Optional[str]:
        """
        Look up a peer's published public key.

        Returns:
            The JWK snapshot, or None if the peer has none (chat not encrypted)
        """
        try:
            response = await self.http_client.get(f"{self.server_url}/api/users/{peer}")
        except httpx.HTTPError as e:
            logger.warning("Public key lookup for %s failed: %s", peer, e)
            return None

        if response.status_code != 200:
            return None
        public_key = response.json().get("publicKey")
        self.peer_keys[peer] = public_key
        return public_key

    async def connect_websocket(self) -> bool:
        """Connect to WebSocket server"""
        try:
            self.websocket = await websockets.connect(self.ws_url)
            await self.websocket.send(json.dumps({"type": "auth", "token": self.token}))
            data = json.loads(await self.websocket.recv())
        except (OSError, websockets.exceptions.WebSocketException) as e:
            print(f"WebSocket connection error: {e}")
            return False

        if data.get("type") == "auth_success":
            print("Connected to server")
            print(f"Online users: {', '.join(data.get('online_users', []))}")
            return True
        print("Authentication failed")
        return False

    async def start_chat(self, peer_username: str):
        """
        Start or continue a chat with a user.

        Args:
            peer_username: Username to chat with
        """
        self.current_chat = peer_username
        public_key = await self.fetch_peer_key(peer_username)
        state = "encrypted" if public_key else "NOT encrypted (peer has no public key)"
        print(f"Chatting with {peer_username} ({state}). Type '/exit' to leave chat, '/help' for commands.")
        await self.show_history(peer_username)

    async def show_history(self, peer: str, limit: int = 20):
        """Fetch, decrypt and print the latest messages with a peer"""
        try:
            response = await self.http_client.get(
                f"{self.server_url}/api/messages",
                params={"peer": peer, "limit": limit},
                headers=self._auth_headers
            )
        except httpx.HTTPError as e:
            print(f"Failed to load history: {e}")
            return

        if response.status_code != 200:
            return
        records = await self.encryption.decrypt_messages(self.username, response.json())
        if not records:
            return

        print("\n--- Message History ---")
        for record in records:
            prefix = "You" if record['sender'] == self.username else record['sender']
            print(f"[{(record.get('createdAt') or '')[11:16]}] {prefix}: {display_content(record)}")
        print("--- End History ---\n")

    async def send_message(self, peer: str, message: str):
        """
        Send a message, encrypted when the peer has a published key.

        Args:
            peer: Recipient username
            message: Message to send
        """
        public_key = self.peer_keys.get(peer)
        if public_key is None:
            public_key = await self.fetch_peer_key(peer)

        record = await self.encryption.prepare_outgoing(self.username, peer, message, public_key)
        if not record['isEncrypted'] and self.require_encryption:
            print(f"Not sent: {peer} cannot receive encrypted messages")
            return

        payload = {k: record[k] for k in ('receiver', 'content', 'isEncrypted', 'encryptedContent', 'iv')}
        try:
            response = await self.http_client.post(
                f"{self.server_url}/api/messages",
                json=payload,
                headers=self._auth_headers
            )
        except httpx.HTTPError as e:
            print(f"Failed to send message: {e}")
            return

        if response.status_code != 201:
            print(f"Failed to send message: {response.text}")
        elif not record['isEncrypted']:
            print("[sent unencrypted]")

    async def receive_messages(self):
        """Background task to receive pushed messages"""
        try:
            while self.running:
                data = json.loads(await self.websocket.recv())

                if data.get("type") == "message":
                    await self._handle_incoming_message(data.get("data") or {})
                elif data.get("type") == "user_online":
                    print(f"\n[{data['username']} is now online]")
                elif data.get("type") == "user_offline":
                    print(f"\n[{data['username']} is now offline]")
                elif data.get("type") == "error":
                    print(f"\n[Error: {data.get('message')}]")

        except websockets.exceptions.ConnectionClosed:
            print("\nConnection closed")
            self.running = False

    async def _handle_incoming_message(self, record: dict):
        """Decrypt and display a pushed message record"""
        sender = record.get("sender")
        if not sender:
            return

        [record] = await self.encryption.decrypt_messages(self.username, [record])
        text = display_content(record)
        if sender == self.current_chat:
            print(f"\n[{(record.get('createdAt') or '')[11:16]}] {sender}: {text}")
        else:
            print(f"\n[New message from {sender}]: {text}")

    async def list_users(self):
        """List all registered users"""
        try:
            response = await self.http_client.get(f"{self.server_url}/api/users")
        except httpx.HTTPError as e:
            print(f"Failed to list users: {e}")
            return
        print("Registered users:")
        for user in response.json()["users"]:
            print(f"  - {user}")

    async def list_online_users(self):
        """List currently online users"""
        try:
            response = await self.http_client.get(f"{self.server_url}/api/users/online")
        except httpx.HTTPError as e:
            print(f"Failed to list online users: {e}")
            return
        print("Online users:")
        for user in response.json()["users"]:
            if user != self.username:
                print(f"  - {user}")

    async def run_interactive(self):
        """Run interactive chat session"""
        self.running = True
        receive_task = asyncio.create_task(self.receive_messages())
        session = PromptSession()

        print()
        print(HELP_TEXT)
        print()

        try:
            while self.running:
                try:
                    prompt_text = f"[{self.current_chat}] > " if self.current_chat else "> "
                    with patch_stdout():
                        user_input = await session.prompt_async(prompt_text)

                    if not user_input:
                        continue

                    if user_input.startswith("/"):
                        await self._handle_command(user_input)
                    elif self.current_chat:
                        await self.send_message(self.current_chat, user_input)
                    else:
                        print("No active chat. Use /chat <username> to start.")

                except (KeyboardInterrupt, EOFError):
                    break

        finally:
            self.running = False
            receive_task.cancel()
            await self.close()

    async def close(self):
        if self.websocket:
            await self.websocket.close()
        await self.http_client.aclose()
        if self.key_store:
            self.key_store.close()

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split(maxsplit=1)
        cmd = parts[0].lower()

        if cmd == "/chat" and len(parts) == 2:
            await self.start_chat(parts[1].strip())
        elif cmd == "/exit":
            self.current_chat = None
            print("Exited chat")
        elif cmd == "/users":
            await self.list_users()
        elif cmd == "/online":
            await self.list_online_users()
        elif cmd == "/history" and self.current_chat:
            await self.show_history(self.current_chat)
        elif cmd == "/reset-keys":
            await self.reset_keys()
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="End-to-end encrypted chat client")
    parser.add_argument("--server", default="http://localhost:8000", help="Server base URL")
    parser.add_argument("--data-dir", default="client_data", help="Directory for the local key store")
    parser.add_argument("--require-encryption", action="store_true",
                        help="Refuse to send plaintext to peers without a public key")
    parser.add_argument("--log-level", default="WARNING")
    return parser.parse_args(argv)


async def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    client = ChatClient(args.server, args.data_dir, args.require_encryption)

    print("=" * 50)
    print("End-to-End Encrypted Messenger")
    print("=" * 50)
    print()

    while True:
        print("1. Register")
        print("2. Login")
        print("3. Quit")
        choice = input("Choose an option: ").strip()

        if choice in ("1", "2"):
            username = input("Username: ").strip()
            password = getpass.getpass("Password: ")
            action = client.register if choice == "1" else client.login
            if await action(username, password):
                break
        elif choice == "3":
            await client.close()
            return
        else:
            print("Invalid choice")

    if await client.connect_websocket():
        await client.run_interactive()
    else:
        await client.close()

    print("\nGoodbye!")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
