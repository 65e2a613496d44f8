"""Core domain models.

Every stage of the turn pipeline, the persistence collaborator and the HTTP
API operate on these types. Pydantic validates and serialises them at each
data boundary.

Field names are snake_case in Python and camelCase on the wire
(``maxHp``, ``isGodMode``, ...) so the JSON the model is asked to produce
matches the status schema exactly. Dump with ``by_alias=True`` when talking
to the model or writing save files.
"""

from __future__ import annotations

import time
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Difficulty = Literal["EASY", "NORMAL", "HARD", "INSTANT_DEATH"]

DIFFICULTIES: tuple[str, ...] = ("EASY", "NORMAL", "HARD", "INSTANT_DEATH")

# Reserved inventory token; the only legitimate credential for God Mode.
GOD_TOKEN = "[ ∞ ]"


def now_ms() -> int:
    return int(time.time() * 1000)


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Quest(WireModel):
    id: str
    name: str
    description: str = ""
    current: int = 0
    required: int = 1
    unit: str = ""
    is_completed: bool = False


class CharacterAttributes(WireModel):
    strength: int = 10
    magic: int = 10
    agility: int = 10
    defense: int = 10


class CharacterStatus(WireModel):
    """Authoritative dynamic state of a character.

    ``skills`` and ``active_effects`` behave as insertion-ordered sets;
    ``inventory`` keeps duplicates (consumables).
    """

    hp: int
    max_hp: int
    mp: int
    max_mp: int
    skills: list[str] = Field(default_factory=list)
    equipped_skills: list[str] = Field(default_factory=list)
    active_effects: list[str] = Field(default_factory=list)
    inventory: list[str] = Field(default_factory=list)
    quests: list[Quest] = Field(default_factory=list)
    level: int = 1
    evolution_stage: str = ""
    difficulty: Difficulty = "NORMAL"
    is_god_mode: bool = False

    def has_god_token(self) -> bool:
        return any(item.strip() == GOD_TOKEN for item in self.inventory)

    def completed_quests(self) -> int:
        return sum(1 for q in self.quests if q.is_completed)


class ProposedStatus(CharacterStatus):
    """A status as proposed by the model. ``cheat_detected`` never persists."""

    cheat_detected: bool = False


class Character(WireModel):
    name: str
    race: str
    unique_skill: str = ""
    reincarnation_reason: str = ""
    location: str = ""
    attributes: CharacterAttributes = Field(default_factory=CharacterAttributes)
    status: CharacterStatus


class ChatMessage(WireModel):
    """One transcript entry. Immutable once appended."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    role: Literal["user", "model"]
    content: str
    timestamp: int = Field(default_factory=now_ms)


class SaveData(WireModel):
    character: Character
    chat_history: list[ChatMessage] = Field(default_factory=list)
    last_saved: int = Field(default_factory=now_ms)


class Mail(WireModel):
    id: str
    sender: str
    title: str
    content: str = ""
    type: Literal["TEXT", "SKILL", "ITEM"] = "TEXT"
    attachment: str | None = None
    timestamp: int = Field(default_factory=now_ms)
    is_read: bool = False
    is_claimed: bool = False


class BattleRequest(WireModel):
    challenger: str
    target: str
    server_id: str = ""
    p1_hp: int
    p1_max_hp: int
    p2_hp: int
    p2_max_hp: int


class AppraisalResult(WireModel):
    target_name: str
    rank: str
    description: str
    estimated_value: str


class RadarEntity(WireModel):
    name: str
    distance: str
    hostility: str
    magic_level: Literal["LOW", "MEDIUM", "HIGH"] = "LOW"


class EntityAnalysis(WireModel):
    name: str
    type: str
    origin: str
    description: str
    usage: str


class ModelTier(WireModel):
    """One quality/cost level of the generative backend."""

    id: str
    display_name: str
    generation_config: dict = Field(default_factory=dict)


def new_status(difficulty: Difficulty = "NORMAL", evolution_stage: str = "") -> CharacterStatus:
    """Creation-default status for a fresh character."""
    return CharacterStatus(
        hp=100,
        max_hp=100,
        mp=50,
        max_mp=50,
        level=1,
        evolution_stage=evolution_stage,
        difficulty=difficulty,
    )


def new_character(
    name: str,
    race: str,
    unique_skill: str = "",
    reincarnation_reason: str = "",
    location: str = "",
    difficulty: Difficulty = "NORMAL",
    attributes: CharacterAttributes | None = None,
) -> Character:
    """Build a character with the creation-default status.

    The starting evolution stage is the race itself; the unique skill, when
    given, is the first learned skill.
    """
    status = new_status(difficulty, evolution_stage=race)
    if unique_skill:
        status.skills.append(unique_skill)
    return Character(
        name=name,
        race=race,
        unique_skill=unique_skill,
        reincarnation_reason=reincarnation_reason,
        location=location,
        attributes=attributes or CharacterAttributes(),
        status=status,
    )
