"""
session.py — Bearer token and user profile of the logged-in customer
"""

import json
import logging
from typing import Optional

from pydantic import ValidationError

from .models import User
from .storage import LocalStorage, TOKEN_KEY, USER_KEY

log = logging.getLogger(__name__)


class Session:
    """
    Holds the session credential and the stored user profile.

    Loaded from local storage at construction. A corrupt or missing profile is
    dropped while the token is kept; the customer stays authenticated.
    """

    def __init__(self, storage: LocalStorage):
        self.storage = storage
        self.token: Optional[str] = storage.get_item(TOKEN_KEY) or None
        self.user: Optional[User] = self._load_user() if self.token else None

    def _load_user(self) -> Optional[User]:
        raw = self.storage.get_item(USER_KEY)
        if not raw:
            return None
        if raw == "undefined":
            self._forget(USER_KEY)
            return None
        try:
            return User.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            log.error(f"Perfil de usuário armazenado inválido, descartando: {e}")
            self._forget(USER_KEY)
            return None

    def _forget(self, key: str):
        try:
            self.storage.remove_item(key)
        except OSError as e:
            log.warning(f"Falha ao remover '{key}' do armazenamento local: {e}")

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)

    def login(self, token: str, user: Optional[User] = None):
        self.token = token
        self.user = user
        try:
            self.storage.set_item(TOKEN_KEY, token)
            # Só grava o perfil se ele veio na resposta
            if user is not None:
                self.storage.set_item(USER_KEY, user.model_dump_json())
        except OSError as e:
            log.warning(f"Falha ao persistir a sessão: {e}")
        log.info(f"Sessão iniciada para {user.email if user else 'usuário sem perfil'}.")

    def logout(self):
        self.token = None
        self.user = None
        self._forget(TOKEN_KEY)
        self._forget(USER_KEY)

    def invalidate(self):
        """Drops the credential after the backend rejected it (401/403)."""
        if self.token:
            log.warning("Credencial rejeitada pelo servidor. Sessão encerrada.")
        self.logout()
