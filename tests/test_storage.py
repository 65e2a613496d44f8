"""Tests for JsonGameStore."""

import json
from unittest.mock import patch

import pytest

from tempest_rpg.models import BattleRequest, ChatMessage, Mail, SaveData, new_character
from tempest_rpg.storage import JsonGameStore


@pytest.fixture
def store(tmp_path) -> JsonGameStore:
    return JsonGameStore(tmp_path)


def _save() -> SaveData:
    return SaveData(
        character=new_character("Rimuru", "Slime", unique_skill="Predator"),
        chat_history=[ChatMessage(role="model", content="You wake in a cave.")],
    )


# ── Saves ────────────────────────────────────────────────


async def test_load_missing_returns_none(store):
    assert await store.load_game_data("nobody") is None


async def test_save_and_load(store):
    result = await store.save_game_data("rimuru", _save())
    assert result.success is True
    loaded = await store.load_game_data("rimuru")
    assert loaded.character.name == "Rimuru"
    assert loaded.character.status.skills == ["Predator"]
    assert [m.content for m in loaded.chat_history] == ["You wake in a cave."]


async def test_save_file_uses_camel_case(store, tmp_path):
    await store.save_game_data("rimuru", _save())
    data = json.loads((tmp_path / "players" / "rimuru" / "save.json").read_text())
    assert "chatHistory" in data
    assert "maxHp" in data["character"]["status"]


async def test_save_failure_reported(store):
    with patch.object(store, "_save", side_effect=OSError("disk full")):
        result = await store.save_game_data("rimuru", _save())
    assert result.success is False
    assert "disk full" in result.error


@pytest.mark.parametrize("user", ["", "../etc", "a/b", ".hidden"])
async def test_invalid_user_name(store, user):
    with pytest.raises(ValueError):
        await store.load_game_data(user)


async def test_delete(store):
    await store.save_game_data("rimuru", _save())
    assert await store.delete_game_data("rimuru") is True
    assert await store.delete_game_data("rimuru") is False
    assert await store.load_game_data("rimuru") is None


# ── Mailbox ──────────────────────────────────────────────


async def test_empty_mailbox(store):
    assert await store.get_mailbox("rimuru") == []


async def test_send_mail_upserts_by_id(store):
    store.send_mail("rimuru", Mail(id="1", sender="ADMIN", title="Hello"))
    store.send_mail("rimuru", Mail(id="2", sender="ADMIN", title="Second"))
    store.send_mail("rimuru", Mail(id="1", sender="ADMIN", title="Edited"))
    mails = await store.get_mailbox("rimuru")
    assert [(m.id, m.title) for m in mails] == [("1", "Edited"), ("2", "Second")]


async def test_mark_claimed(store):
    store.send_mail("rimuru", Mail(id="1", sender="ADMIN", title="Gift", type="ITEM", attachment="Potion"))
    mail = await store.mark_claimed("rimuru", "1")
    assert mail.is_claimed and mail.is_read
    stored = (await store.get_mailbox("rimuru"))[0]
    assert stored.is_claimed


async def test_mark_claimed_unknown(store):
    assert await store.mark_claimed("rimuru", "missing") is None


# ── Battles ──────────────────────────────────────────────


async def test_create_battle(store, tmp_path):
    request = BattleRequest(
        challenger="rimuru", target="milim", server_id="s1",
        p1_hp=100, p1_max_hp=100, p2_hp=9000, p2_max_hp=9000,
    )
    assert await store.create_battle(request) == 1
    assert await store.create_battle(request) == 2

    battles = json.loads((tmp_path / "battles.json").read_text())
    assert battles[0]["status"] == "PENDING"
    assert battles[0]["turn"] == "rimuru"
    assert battles[0]["p2MaxHp"] == 9000
