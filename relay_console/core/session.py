"""
Session - process-wide credential and identity

Init: restore() loads the persisted credential (if any).
Teardown: logout or an authentication failure calls invalidate(), which
drops the credential, wipes the persisted copy and notifies listeners so the
front end can ask for a fresh login.
"""

from __future__ import annotations

import logging
import os
from typing import Callable, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from ..models import Identity

logger = logging.getLogger(__name__)

KEY_FILE = "session.key"
TOKEN_FILE = "session.token"


def _write_private(path: str, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)


class TokenStore:
    """Fernet-encrypted credential file under the console state directory."""

    def __init__(self, state_dir: str):
        self.state_dir = state_dir
        self.key_path = os.path.join(state_dir, KEY_FILE)
        self.token_path = os.path.join(state_dir, TOKEN_FILE)

    def _key(self, create: bool) -> Optional[bytes]:
        if os.path.exists(self.key_path):
            with open(self.key_path, "rb") as f:
                key = f.read().strip()
            if key:
                return key
        if not create:
            return None
        os.makedirs(self.state_dir, exist_ok=True)
        key = Fernet.generate_key()
        _write_private(self.key_path, key)
        return key

    def save(self, token: str) -> None:
        key = self._key(create=True)
        blob = Fernet(key).encrypt(token.encode("utf-8"))
        _write_private(self.token_path, blob)

    def load(self) -> str:
        if not os.path.exists(self.token_path):
            return ""
        key = self._key(create=False)
        if not key:
            return ""
        with open(self.token_path, "rb") as f:
            blob = f.read().strip()
        try:
            return Fernet(key).decrypt(blob).decode("utf-8")
        except (InvalidToken, ValueError):
            logger.warning("discarding unreadable persisted credential path=%s", self.token_path)
            self.clear()
            return ""

    def clear(self) -> None:
        try:
            os.remove(self.token_path)
        except FileNotFoundError:
            pass


class Session:
    def __init__(self, store: Optional[TokenStore] = None):
        self.store = store
        self.token: str = ""
        self.identity: Optional[Identity] = None
        self._listeners: List[Callable[[str], None]] = []

    @property
    def authenticated(self) -> bool:
        return bool(self.token)

    def on_teardown(self, callback: Callable[[str], None]) -> None:
        self._listeners.append(callback)

    def restore(self) -> bool:
        """Load a persisted credential. Identity stays unknown until whoami succeeds."""
        if self.store is None:
            return False
        self.token = self.store.load()
        self.identity = None
        return bool(self.token)

    def establish(self, token: str, identity: Optional[Identity] = None) -> None:
        self.token = token
        self.identity = identity
        if self.store is not None:
            self.store.save(token)

    def invalidate(self, reason: str = "") -> None:
        had_token = bool(self.token)
        self.token = ""
        self.identity = None
        if self.store is not None:
            self.store.clear()
        if had_token:
            logger.info("session torn down reason=%s", reason or "-")
        for cb in list(self._listeners):
            try:
                cb(reason)
            except Exception:
                logger.exception("session teardown listener crashed")
