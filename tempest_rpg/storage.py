"""JSON file storage for player saves, mailboxes and battle requests.

The session only sees the GameStore protocol; JsonGameStore is the local
implementation. Reads and writes go through plain helper methods that load
and dump JSON, pushed onto a worker thread so the event loop never blocks.

Directory layout:

    {base}/
      players/
        {user}/
          save.json      ← SaveData (character + chat history)
          mailbox.json   ← list of Mail objects
      battles.json       ← list of battle records
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel

from tempest_rpg.models import BattleRequest, Mail, SaveData, now_ms

logger = logging.getLogger(__name__)


class SaveResult(BaseModel):
    success: bool
    error: str | None = None


class GameStore(Protocol):
    async def load_game_data(self, user: str) -> SaveData | None: ...

    async def save_game_data(self, user: str, data: SaveData) -> SaveResult: ...

    async def get_mailbox(self, user: str) -> list[Mail]: ...

    async def mark_claimed(self, user: str, mail_id: str) -> Mail | None: ...

    async def create_battle(self, request: BattleRequest) -> int: ...

    async def delete_game_data(self, user: str) -> bool: ...


class JsonGameStore:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._players = base_path / "players"
        self._players.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _player_dir(self, user: str) -> Path:
        if not user or "/" in user or "\\" in user or user.startswith("."):
            raise ValueError(f"Invalid user name: {user!r}")
        path = self._players / user
        path.mkdir(exist_ok=True)
        return path

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text(encoding="utf-8"))

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")

    # ------------------------------------------------------------------
    # Saves
    # ------------------------------------------------------------------

    def _load(self, user: str) -> SaveData | None:
        path = self._player_dir(user) / "save.json"
        if not path.exists():
            return None
        return SaveData.model_validate(self._read_json(path))

    def _save(self, user: str, data: SaveData) -> None:
        self._write_json(
            self._player_dir(user) / "save.json",
            data.model_dump(by_alias=True),
        )

    async def load_game_data(self, user: str) -> SaveData | None:
        return await asyncio.to_thread(self._load, user)

    async def save_game_data(self, user: str, data: SaveData) -> SaveResult:
        try:
            await asyncio.to_thread(self._save, user, data)
        except OSError as e:
            logger.warning("save failed user=%s: %s", user, e)
            return SaveResult(success=False, error=str(e))
        logger.debug("saved user=%s messages=%d", user, len(data.chat_history))
        return SaveResult(success=True)

    def _delete(self, user: str) -> bool:
        path = self._player_dir(user) / "save.json"
        if not path.exists():
            return False
        path.unlink()
        return True

    async def delete_game_data(self, user: str) -> bool:
        return await asyncio.to_thread(self._delete, user)

    # ------------------------------------------------------------------
    # Mailbox
    # ------------------------------------------------------------------

    def _mailbox(self, user: str) -> list[Mail]:
        path = self._player_dir(user) / "mailbox.json"
        if not path.exists():
            return []
        return [Mail.model_validate(m) for m in self._read_json(path)]

    def _write_mailbox(self, user: str, mails: list[Mail]) -> None:
        self._write_json(
            self._player_dir(user) / "mailbox.json",
            [m.model_dump(by_alias=True) for m in mails],
        )

    async def get_mailbox(self, user: str) -> list[Mail]:
        return await asyncio.to_thread(self._mailbox, user)

    def send_mail(self, user: str, mail: Mail) -> None:
        """Upsert a mail by id."""
        mails = self._mailbox(user)
        for i, m in enumerate(mails):
            if m.id == mail.id:
                mails[i] = mail
                break
        else:
            mails.append(mail)
        self._write_mailbox(user, mails)

    def _mark_claimed(self, user: str, mail_id: str) -> Mail | None:
        mails = self._mailbox(user)
        for m in mails:
            if m.id == mail_id:
                m.is_read = True
                m.is_claimed = True
                self._write_mailbox(user, mails)
                return m
        return None

    async def mark_claimed(self, user: str, mail_id: str) -> Mail | None:
        return await asyncio.to_thread(self._mark_claimed, user, mail_id)

    # ------------------------------------------------------------------
    # Battles
    # ------------------------------------------------------------------

    def _create_battle(self, request: BattleRequest) -> int:
        path = self._base / "battles.json"
        battles = self._read_json(path) if path.exists() else []
        battle_id = max((b["id"] for b in battles), default=0) + 1
        battles.append({
            "id": battle_id,
            **request.model_dump(by_alias=True),
            "status": "PENDING",
            "turn": request.challenger,
            "logs": [],
            "lastUpdated": now_ms(),
        })
        self._write_json(path, battles)
        return battle_id

    async def create_battle(self, request: BattleRequest) -> int:
        return await asyncio.to_thread(self._create_battle, request)
