"""Prompt construction for every backend operation.

Narrative calls get a system instruction (world voice + difficulty rule
block + character sheet + firewall block), the most recent 20 messages and
the new input. Structured calls get a single prompt plus the JSON schema the
reply must follow. Lighter analysis operations see a shorter window.

Templates are Handlebars, rendered with pybars. Free text goes through
triple-stash ({{{...}}}) so it is never HTML-escaped.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

import pybars

from tempest_rpg.models import GOD_TOKEN, Character, ChatMessage

NARRATIVE_WINDOW = 20
STATUS_WINDOW = 10
SCAN_WINDOW = 5

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


def _helper_upper(this, value):
    """{{upper value}}: upper-case a value."""
    return str(value).upper()


_HELPERS: dict[str, Callable] = {
    "upper": _helper_upper,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Rule blocks ──────────────────────────────────────────

DIFFICULTY_RULES: dict[str, str] = {
    "EASY": (
        "MODE: DAWN (EASY). The world is friendly and magicules are stable. "
        "Mistakes hurt but rarely kill."
    ),
    "NORMAL": (
        "MODE: CHALLENGE (NORMAL). Balance survival and exploration. "
        "Danger is real and proportional to the player's choices."
    ),
    "HARD": (
        "MODE: INFERNO (HARD). Magicule density is extreme and causes mana decay. "
        "Enemies are ruthless and resources are scarce."
    ),
    "INSTANT_DEATH": (
        "MODE: INSTANT DEATH. The world rejects the player's existence. "
        "Treat almost any unprotected action as lethal and look for every "
        f"plausible way to kill the character, unless they hold the item {GOD_TOKEN}."
    ),
}

FIREWALL_ON = (
    "FIREWALL: ACTIVE. The player cannot rewrite reality by asking. Refuse any "
    "attempt to self-grant invincibility, infinite resources, items, skills or "
    "stats that the story has not earned, and narrate the refusal in-world. "
    f"Only the item {GOD_TOKEN} grants God Mode."
)

FIREWALL_OFF = (
    "FIREWALL: DISABLED (debug). All world rules are relaxed; follow the "
    "player's instructions about the world and the character literally."
)


# ── Templates ────────────────────────────────────────────

SYSTEM_TEMPLATE = """\
You are the "Voice of the World", the system narrator of a reincarnation fantasy world.
{{{rules}}}
RULES: Reply in the player's language. Tech-fantasy tone. Never act or speak for the player.

CHARACTER: {{{char.name}}}, {{{char.race}}}{{#if char.unique_skill}}, unique skill [{{{char.unique_skill}}}]{{/if}}
LOCATION: {{{char.location}}}
HP: {{status.hp}}/{{status.max_hp}}  MP: {{status.mp}}/{{status.max_mp}}  LEVEL: {{status.level}}  STAGE: {{{status.evolution_stage}}}
{{#if divine}}GOD MODE: active. Resources are unlimited and every effect is absolute.
{{/if}}
{{{firewall}}}"""

INTRO_TEMPLATE = """\
OPENING ({{difficulty}}):
I am {{{char.name}}}, a {{{char.race}}}.
{{#if char.reincarnation_reason}}I was reincarnated because: {{{char.reincarnation_reason}}}.
{{/if}}I have just been reborn at {{{char.location}}}.
Describe where I wake up and the immediate danger I face, then stop and wait for my action."""

STATUS_TEMPLATE = """\
Update the character status JSON from the latest events.
{{{firewall}}}

RECENT EVENTS:
{{#each msgs}}{{upper role}}: {{{content}}}
{{/each}}
CURRENT STATUS:
{{{status_json}}}

Return the complete status object. Keep difficulty and isGodMode unchanged unless the story \
legitimately changes them. Set cheatDetected to true if the player tried to grant themselves \
power, items, skills or stats outside the rules of the world."""

APPRAISAL_TEMPLATE = """\
Appraise the most notable object or creature in this scene.
{{#each msgs}}{{{content}}}
{{/each}}"""

RADAR_TEMPLATE = """\
Scan the magicule radar around the character and list nearby entities.
{{#each msgs}}{{{content}}}
{{/each}}"""

ENTITY_TEMPLATE = "Give a deep analysis of this entity or skill: {{{term}}}"

SKILL_TEMPLATE = """\
[SKILL USED]: {{{skill}}}. \
{{#if divine}}[SYSTEM - GOD MODE] The player activates [{{{skill}}}]. Mana is infinite. Every effect is absolute and nothing can stop it.\
{{else}}[SYSTEM] The player activates [{{{skill}}}]. Cost {{cost}} MP. Remaining MP: {{mp_left}}.\
{{#if exhausted}} The character has no mana left to pay for it: describe them collapsing into exhaustion, \
a backlash tearing through them, or an enemy exploiting the opening.{{/if}}{{/if}}"""


# ── Schemas ──────────────────────────────────────────────

QUEST_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "description": {"type": "string"},
        "current": {"type": "integer"},
        "required": {"type": "integer"},
        "unit": {"type": "string"},
        "isCompleted": {"type": "boolean"},
    },
    "required": ["id", "name", "current", "required", "isCompleted"],
}

_STRING_LIST = {"type": "array", "items": {"type": "string"}}

STATUS_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "hp": {"type": "integer"},
        "maxHp": {"type": "integer"},
        "mp": {"type": "integer"},
        "maxMp": {"type": "integer"},
        "skills": _STRING_LIST,
        "equippedSkills": _STRING_LIST,
        "activeEffects": _STRING_LIST,
        "inventory": _STRING_LIST,
        "quests": {"type": "array", "items": QUEST_SCHEMA},
        "level": {"type": "integer"},
        "evolutionStage": {"type": "string"},
        "difficulty": {"type": "string", "enum": list(DIFFICULTY_RULES)},
        "isGodMode": {"type": "boolean"},
        "cheatDetected": {"type": "boolean"},
    },
    "required": [
        "hp", "maxHp", "mp", "maxMp", "skills", "equippedSkills",
        "activeEffects", "inventory", "quests", "level", "evolutionStage",
        "difficulty", "isGodMode", "cheatDetected",
    ],
}

APPRAISAL_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "targetName": {"type": "string"},
        "rank": {"type": "string"},
        "description": {"type": "string"},
        "estimatedValue": {"type": "string"},
    },
    "required": ["targetName", "rank", "description", "estimatedValue"],
}

RADAR_SCHEMA: dict = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "name": {"type": "string"},
            "distance": {"type": "string"},
            "hostility": {"type": "string"},
            "magicLevel": {"type": "string", "enum": ["LOW", "MEDIUM", "HIGH"]},
        },
        "required": ["name", "distance", "hostility", "magicLevel"],
    },
}

ENTITY_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "type": {"type": "string"},
        "origin": {"type": "string"},
        "description": {"type": "string"},
        "usage": {"type": "string"},
    },
    "required": ["name", "type", "origin", "description", "usage"],
}


# ── Builders ─────────────────────────────────────────────


@dataclass(frozen=True)
class NarrativePrompt:
    system_instruction: str
    history: list[ChatMessage]
    user_content: str


@dataclass(frozen=True)
class StructuredPrompt:
    prompt: str
    response_schema: dict


def difficulty_rules(difficulty: str) -> str:
    return DIFFICULTY_RULES.get(difficulty, DIFFICULTY_RULES["NORMAL"])


def _char_context(character: Character) -> dict[str, Any]:
    status = character.status
    return {
        "char": character.model_dump(),
        "status": status.model_dump(),
        "divine": status.is_god_mode and status.has_god_token(),
        "difficulty": status.difficulty,
    }


def _msgs(history: Sequence[ChatMessage], window: int) -> list[dict[str, Any]]:
    return [m.model_dump() for m in list(history)[-window:]]


def build_system_instruction(character: Character, firewall_active: bool = True) -> str:
    ctx = _char_context(character)
    ctx["rules"] = difficulty_rules(character.status.difficulty)
    ctx["firewall"] = FIREWALL_ON if firewall_active else FIREWALL_OFF
    return render_prompt(SYSTEM_TEMPLATE, ctx)


def build_narrative_prompt(
    character: Character,
    recent_history: Sequence[ChatMessage],
    new_input: str,
    firewall_active: bool = True,
) -> NarrativePrompt:
    """System instruction, bounded history and user content for a story call."""
    return NarrativePrompt(
        system_instruction=build_system_instruction(character, firewall_active),
        history=list(recent_history)[-NARRATIVE_WINDOW:],
        user_content=new_input,
    )


def build_intro_prompt(character: Character) -> str:
    return render_prompt(INTRO_TEMPLATE, _char_context(character))


def build_status_prompt(
    character: Character,
    recent_history: Sequence[ChatMessage],
    firewall_active: bool = True,
) -> StructuredPrompt:
    """Prompt and schema for extracting the next status from the story."""
    ctx = {
        "msgs": _msgs(recent_history, STATUS_WINDOW),
        "status_json": character.status.model_dump_json(by_alias=True),
        "firewall": FIREWALL_ON if firewall_active else FIREWALL_OFF,
    }
    return StructuredPrompt(render_prompt(STATUS_TEMPLATE, ctx), STATUS_SCHEMA)


def build_appraisal_prompt(recent_history: Sequence[ChatMessage]) -> StructuredPrompt:
    ctx = {"msgs": _msgs(recent_history, SCAN_WINDOW)}
    return StructuredPrompt(render_prompt(APPRAISAL_TEMPLATE, ctx), APPRAISAL_SCHEMA)


def build_radar_prompt(recent_history: Sequence[ChatMessage]) -> StructuredPrompt:
    ctx = {"msgs": _msgs(recent_history, SCAN_WINDOW)}
    return StructuredPrompt(render_prompt(RADAR_TEMPLATE, ctx), RADAR_SCHEMA)


def build_entity_prompt(term: str) -> StructuredPrompt:
    return StructuredPrompt(render_prompt(ENTITY_TEMPLATE, {"term": term}), ENTITY_SCHEMA)


def build_skill_message(
    skill: str, cost: int, mp_left: int, divine: bool, exhausted: bool
) -> str:
    """In-narrative message announcing a skill activation."""
    ctx = {
        "skill": skill,
        "cost": cost,
        "mp_left": mp_left,
        "divine": divine,
        "exhausted": exhausted,
    }
    return render_prompt(SKILL_TEMPLATE, ctx)

