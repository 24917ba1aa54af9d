"""File-backed session memory.

Each session lives in ``<sessions_dir>/<session_id>.json`` as a pretty-printed
UTF-8 document. Lookups are by identifier only.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from advisor.core.errors import ReadFailure, WriteFailure
from advisor.core.models import Session


logger = logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class SessionStore:
    def __init__(self, sessions_dir: Union[str, Path]) -> None:
        self.root = Path(sessions_dir)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise WriteFailure(f"Cannot prepare sessions directory {self.root}") from exc

    def _path(self, session_id: str) -> Optional[Path]:
        if not isinstance(session_id, str) or not SESSION_ID_PATTERN.match(session_id):
            return None
        return self.root / f"{session_id}.json"

    def _writable_path(self, session_id: str) -> Path:
        path = self._path(session_id)
        if path is None:
            raise WriteFailure(f"Invalid session id: {session_id!r}")
        return path

    @staticmethod
    def _encode(session_id: str, data: Session) -> str:
        if data.session_id != session_id:
            raise WriteFailure(
                f"Session document id {data.session_id!r} does not match {session_id!r}"
            )
        return json.dumps(data.to_document(), indent=2, ensure_ascii=False)

    def create(self, session_id: str, initial_data: Session) -> Session:
        path = self._writable_path(session_id)
        payload = self._encode(session_id, initial_data)
        try:
            # "x" refuses to clobber an existing session.
            with open(path, "x", encoding="utf-8") as fp:
                fp.write(payload)
        except OSError as exc:
            raise WriteFailure(f"Could not create session {session_id}") from exc
        logger.info("Created session file %s", path.name)
        return initial_data

    def load(self, session_id: str) -> Optional[Session]:
        path = self._path(session_id)
        if path is None:
            return None
        try:
            with open(path, "r", encoding="utf-8") as fp:
                raw = fp.read()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            raise ReadFailure(f"Could not read session {session_id}") from exc

        try:
            return Session.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise ReadFailure(f"Session {session_id} is not a valid document") from exc

    def save(self, session_id: str, data: Session) -> Session:
        path = self._writable_path(session_id)
        payload = self._encode(session_id, data)
        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(
                dir=self.root, prefix=f".{session_id}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fp:
                fp.write(payload)
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as exc:
            raise WriteFailure(f"Could not save session {session_id}") from exc
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.warning("Could not remove temp file %s", tmp_name)
        return data
