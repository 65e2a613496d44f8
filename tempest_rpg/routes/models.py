"""Pydantic request/response models for API endpoints."""

from pydantic import BaseModel

from tempest_rpg.models import CharacterAttributes, Difficulty


class CreateCharacter(BaseModel):
    name: str
    race: str
    unique_skill: str = ""
    reincarnation_reason: str = ""
    location: str = ""
    difficulty: Difficulty = "NORMAL"
    attributes: CharacterAttributes | None = None


class ChatBody(BaseModel):
    message: str


class UseSkillBody(BaseModel):
    confirmed: bool = False


class AnalyzeBody(BaseModel):
    term: str


class BattleBody(BaseModel):
    target: str
    server_id: str = ""
