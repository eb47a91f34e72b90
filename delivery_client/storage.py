"""
storage.py — Durable local key/value storage

A small JSON-file store with string values, used the way a browser uses
local storage: the cart, the session token, the user profile and the
coupon handoff live here between runs.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional

STORAGE_PATH = os.environ.get("DELIVERY_STORAGE_PATH", "~/.delivery_client/storage.json")

CART_KEY = "cart_items"
TOKEN_KEY = "auth_token"
USER_KEY = "user_data"
COUPON_HANDOFF_KEY = "selected_coupon"

log = logging.getLogger(__name__)


class LocalStorage:
    """
    Key/value store persisted to a single JSON file.

    Values are strings; callers serialize their own data. A missing file is an
    empty store, a corrupt file is logged and treated as empty. Every write
    rewrites the whole file atomically.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path or STORAGE_PATH).expanduser()
        self._data: Dict[str, str] = self._read()

    def _read(self) -> Dict[str, str]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            log.error(f"Não foi possível ler o armazenamento local {self.path}: {e}")
            return {}

        try:
            data = json.loads(raw)
        except ValueError:
            log.warning(f"Armazenamento local corrompido em {self.path}. Iniciando vazio.")
            return {}
        if not isinstance(data, dict):
            log.warning(f"Armazenamento local em formato inesperado em {self.path}. Iniciando vazio.")
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _flush(self):
        """
        Writes the current content to disk via temp file + replace.

        Raises:
            OSError: If the directory or the file cannot be written.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".storage-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, ensure_ascii=False)
            os.replace(tmp_name, self.path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str):
        self._data[key] = value
        self._flush()

    def remove_item(self, key: str):
        if self._data.pop(key, None) is not None:
            self._flush()
