"""Game session controller: one character, one transcript, one turn at a time.

A turn is:
  1. Append the player's message to history.
  2. Narrative call (system instruction + last 20 messages + input) through
     the dispatcher; exhaustion appends a fixed fallback line instead.
  3. Append the model's reply.
  4. Status call (schema-constrained) through the dispatcher.
  5. Reconcile the proposal, apply the sanitised status, surface notices.

Reserved commands (unlock/lock) flip the firewall without calling the
backend. While a turn is in flight or the character is dying, input is
rejected. Two background tasks run beside turns and only ever read state:
the debounced autosave and the mailbox poll.

Death sequence: ALIVE -> DEATH_CAUSE -> (timer) -> DEATH_CONFIRM ->
confirm_restart() -> ALIVE with character and history discarded.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, TypeVar

from tempest_rpg.config import Settings
from tempest_rpg.llm import Backend, LLMError
from tempest_rpg.models import (
    GOD_TOKEN,
    AppraisalResult,
    Character,
    CharacterStatus,
    ChatMessage,
    EntityAnalysis,
    Mail,
    RadarEntity,
    SaveData,
)
from tempest_rpg.policy import (
    EnforcementPolicy,
    HardBlockPolicy,
    NarrativeConsequencePolicy,
    Verdict,
    Violation,
)
from tempest_rpg.prompts import (
    StructuredPrompt,
    build_appraisal_prompt,
    build_entity_prompt,
    build_intro_prompt,
    build_narrative_prompt,
    build_radar_prompt,
    build_skill_message,
    build_status_prompt,
)
from tempest_rpg.storage import GameStore, SaveResult

from .dispatch import SmartDispatcher
from .reconciler import (
    DIVINE_SENTINEL,
    MAX_EQUIPPED,
    Divine,
    ReconcileResult,
    parse_proposed_status,
    reconcile,
    resource_mode,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

FALLBACK_NARRATIVE = (
    "The world's magicules are overloaded. Please try again in a moment..."
)

UNLOCK_COMMANDS = frozenset({"mở", "unlock", "open"})
LOCK_COMMANDS = frozenset({"đóng", "lock", "close"})

UNLOCK_MESSAGE = "[ADMIN COMMAND]: Edit mode enabled (Unlock)."
LOCK_MESSAGE = "[ADMIN COMMAND]: Protection firewall enabled (Lock)."

ULTIMATE_MARKERS = ("Raphael", "Uriel", "Michael", "Beelzebuth")
SKILL_COST_RATIO = 0.1
ULTIMATE_COST_RATIO = 0.5

CREATOR_STAGE = "∞ THE CREATOR ∞"


class SessionError(Exception):
    """Raised when the session cannot accept the requested action."""


class SessionBusyError(SessionError):
    """A turn is already in flight."""


class SessionDeadError(SessionError):
    """The death sequence is active; only a restart is accepted."""


class LifePhase(str, Enum):
    ALIVE = "ALIVE"
    DEATH_CAUSE = "DEATH_CAUSE"
    DEATH_CONFIRM = "DEATH_CONFIRM"


@dataclass(frozen=True)
class Notification:
    id: int
    message: str
    level: str = "info"


@dataclass
class TurnResult:
    status: Literal["ok", "command"]
    messages: list[ChatMessage] = field(default_factory=list)
    reconcile: ReconcileResult | None = None


@dataclass
class SkillUseResult:
    status: Literal["ok", "needs_confirmation", "blocked"]
    cost: int
    turn: TurnResult | None = None


def is_ultimate(skill: str) -> bool:
    return any(marker in skill for marker in ULTIMATE_MARKERS)


def skill_cost(skill: str, max_mp: int) -> int:
    ratio = ULTIMATE_COST_RATIO if is_ultimate(skill) else SKILL_COST_RATIO
    return math.floor(max_mp * ratio)


class GameSession:
    def __init__(
        self,
        username: str,
        character: Character | None,
        history: list[ChatMessage] | None = None,
        *,
        backend: Backend,
        dispatcher: SmartDispatcher,
        store: GameStore,
        settings: Settings | None = None,
        skill_policy: EnforcementPolicy | None = None,
        cheat_policy: EnforcementPolicy | None = None,
    ) -> None:
        self.username = username
        self.character = character
        self.history: list[ChatMessage] = list(history or [])
        self.backend = backend
        self.dispatcher = dispatcher
        self.store = store
        self.settings = settings or Settings()
        self.skill_policy = skill_policy or NarrativeConsequencePolicy()
        self.cheat_policy = cheat_policy or HardBlockPolicy()

        self.firewall_active = True
        self.phase = LifePhase.ALIVE
        self.notifications: list[Notification] = []
        self.celebration: str | None = None
        self.has_unread_mail = False

        self._busy = False
        self._notif_counter = 0
        self._autosave_task: asyncio.Task | None = None
        self._mail_task: asyncio.Task | None = None
        self._death_task: asyncio.Task | None = None
        self._claim_lock = asyncio.Lock()

        # A save loaded after death goes straight to the restart prompt.
        if character is not None and self._is_dead_status():
            self.phase = LifePhase.DEATH_CONFIRM

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def is_dead(self) -> bool:
        return self.phase is not LifePhase.ALIVE

    def _is_dead_status(self) -> bool:
        status = self._require_character().status
        return status.hp <= 0 and not isinstance(resource_mode(status), Divine)

    def _require_character(self) -> Character:
        if self.character is None:
            raise SessionError("No character; create one first")
        return self.character

    def _check_alive(self) -> Character:
        character = self._require_character()
        if self.is_dead:
            raise SessionDeadError("The character is dead")
        return character

    def _check_ready(self) -> Character:
        character = self._check_alive()
        if self._busy:
            raise SessionBusyError("A turn is already in progress")
        return character

    def notify(self, message: str, level: str = "info") -> Notification:
        notif = Notification(self._notif_counter, message, level)
        self._notif_counter += 1
        self.notifications.append(notif)
        return notif

    def dismiss(self, notification_id: int) -> None:
        self.notifications = [n for n in self.notifications if n.id != notification_id]

    def _append(self, message: ChatMessage) -> None:
        self.history.append(message)
        self._schedule_autosave()

    def _set_status(self, status: CharacterStatus) -> None:
        character = self._require_character()
        self.character = character.model_copy(update={"status": status})
        self._schedule_autosave()

    def new_game(self, character: Character, history: list[ChatMessage] | None = None) -> None:
        """Replace character and history (character creation or load)."""
        self._cancel(self._death_task)
        self.character = character
        self.history = list(history or [])
        self.phase = LifePhase.ALIVE
        self.celebration = None
        if self._is_dead_status():
            self.phase = LifePhase.DEATH_CONFIRM

    # ------------------------------------------------------------------
    # Backend calls
    # ------------------------------------------------------------------

    async def _narrate(self, content: str, history: list[ChatMessage]) -> str:
        prompt = build_narrative_prompt(
            self._require_character(), history, content, self.firewall_active
        )

        async def call(credential, tier) -> str:
            return await self.backend.narrate(
                credential, tier, prompt.system_instruction, prompt.history, prompt.user_content
            )

        try:
            text = await self.dispatcher.execute("Story", call)
        except LLMError as e:
            logger.warning("story call failed: %s", e)
            text = None
        except Exception:
            logger.exception("story call failed unexpectedly")
            text = None
        return text or FALLBACK_NARRATIVE

    async def _structured(
        self, operation: str, prompt: StructuredPrompt, parse: Callable[[Any], T]
    ) -> T | None:
        async def call(credential, tier) -> T:
            raw = await self.backend.generate_json(
                credential, tier, prompt.prompt, prompt.response_schema
            )
            try:
                return parse(raw)
            except (ValueError, TypeError) as e:
                raise LLMError(f"{operation} reply does not match schema: {e}") from e

        try:
            return await self.dispatcher.execute(operation, call)
        except LLMError as e:
            logger.warning("%s call failed: %s", operation, e)
            return None
        except Exception:
            logger.exception("%s call failed unexpectedly", operation)
            return None

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def start(self) -> ChatMessage | None:
        """Open the story when history is empty; seeds exactly one model message."""
        character = self._check_ready()
        if self.history:
            return None
        self._busy = True
        try:
            text = await self._narrate(build_intro_prompt(character), [])
            message = ChatMessage(role="model", content=text)
            self._append(message)
        finally:
            self._busy = False
        return message

    async def send(self, text: str) -> TurnResult:
        """Handle one line of player input."""
        raw = text.strip()
        if not raw:
            raise ValueError("Empty input")
        self._check_ready()

        command = raw.lower()
        if command in UNLOCK_COMMANDS:
            self.firewall_active = False
            self.notify("SYSTEM: FIREWALL DISABLED (OFF).", "warning")
            message = ChatMessage(role="user", content=UNLOCK_MESSAGE)
            self._append(message)
            return TurnResult("command", [message])
        if command in LOCK_COMMANDS:
            self.firewall_active = True
            self.notify("SYSTEM: PROTECTION FIREWALL ENABLED (ON).", "success")
            message = ChatMessage(role="user", content=LOCK_MESSAGE)
            self._append(message)
            return TurnResult("command", [message])

        return await self._run_turn(ChatMessage(role="user", content=raw))

    async def _run_turn(self, user_msg: ChatMessage) -> TurnResult:
        self._busy = True
        try:
            self._append(user_msg)
            text = await self._narrate(user_msg.content, self.history[:-1])
            model_msg = ChatMessage(role="model", content=text)
            self._append(model_msg)
            outcome = await self.update_status()
        finally:
            self._busy = False
        return TurnResult("ok", [user_msg, model_msg], outcome)

    async def update_status(self) -> ReconcileResult | None:
        """Status pipeline; None (status unchanged) when the backend gave nothing usable."""
        character = self._require_character()
        previous = character.status
        prompt = build_status_prompt(character, self.history, self.firewall_active)
        proposed = await self._structured(
            "StatusUpdate", prompt, lambda raw: parse_proposed_status(previous, raw)
        )
        if proposed is None:
            logger.info("status update unavailable; keeping previous status")
            return None

        result = reconcile(previous, proposed, self.firewall_active, self.cheat_policy)
        self._apply(result)
        return result

    def _apply(self, result: ReconcileResult) -> None:
        for notice in result.notices:
            self.notify(notice.message, notice.level)
        for message in result.system_messages:
            self._append(message)
        if result.rejected:
            return
        if result.celebration is not None:
            self.celebration = result.celebration.message
        self._set_status(result.status)
        if result.died:
            self._begin_death()

    # ------------------------------------------------------------------
    # Skills
    # ------------------------------------------------------------------

    async def use_skill(self, skill: str, confirmed: bool = False) -> SkillUseResult:
        """Activate a skill; short on mana outside God Mode goes to the skill policy."""
        character = self._check_ready()
        status = character.status
        divine = isinstance(resource_mode(status), Divine)
        cost = skill_cost(skill, status.max_mp)

        exhausted = False
        if not divine and status.mp < cost:
            verdict = self.skill_policy.decide(
                Violation("insufficient_resource", f"{skill} needs {cost} MP, has {status.mp}")
            )
            if verdict is Verdict.BLOCK:
                self.notify(f"Not enough mana for [{skill}].", "error")
                return SkillUseResult("blocked", cost)
            if verdict is Verdict.CONFIRM and not confirmed:
                self.notify("WARNING: Not enough mana! Forcing it may be fatal!", "error")
                return SkillUseResult("needs_confirmation", cost)
            exhausted = True

        mp_left = max(0, status.mp - cost)
        self.celebration = f"SKILL ACTIVATED: {skill.upper()}"
        content = build_skill_message(skill, cost, mp_left, divine, exhausted)
        if not divine:
            self._set_status(status.model_copy(update={"mp": mp_left}))

        turn = await self._run_turn(ChatMessage(role="user", content=content))
        return SkillUseResult("ok", cost, turn)

    def toggle_equip(self, skill: str) -> bool:
        """Equip or unequip a skill. Returns False when the change was refused."""
        status = self._check_ready().status
        equipped = list(status.equipped_skills)

        if skill in equipped:
            equipped.remove(skill)
            self.notify(f"System: [{skill}] unequipped.", "info")
        elif skill not in status.skills:
            self.notify(f"System: [{skill}] is not a learned skill.", "warning")
            return False
        elif len(equipped) >= MAX_EQUIPPED:
            self.notify(f"System: equip limit of {MAX_EQUIPPED} skills reached.", "warning")
            return False
        else:
            equipped.append(skill)
            self.notify(f"System: [{skill}] equipped.", "success")

        self._set_status(status.model_copy(update={"equipped_skills": equipped}))
        return True

    # ------------------------------------------------------------------
    # Analysis tools
    # ------------------------------------------------------------------

    async def appraise(self) -> AppraisalResult | None:
        self._check_alive()
        self.notify("REPORT: activating Appraisal...", "info")
        result = await self._structured(
            "Appraisal", build_appraisal_prompt(self.history), AppraisalResult.model_validate
        )
        if result is None:
            self.notify("ERROR: appraisal failed.", "error")
        return result

    async def scan_surroundings(self) -> list[RadarEntity]:
        self._check_alive()
        def parse(raw: Any) -> list[RadarEntity]:
            if not isinstance(raw, list):
                raise ValueError("radar reply must be a JSON array")
            return [RadarEntity.model_validate(e) for e in raw]

        result = await self._structured("Radar", build_radar_prompt(self.history), parse)
        if result is None:
            self.notify("Radar error: cannot sense any magicules.", "error")
            return []
        return result

    async def analyze_entity(self, term: str) -> EntityAnalysis | None:
        self._check_alive()
        self.notify(f'REPORT: analysing "{term}"...', "info")
        result = await self._structured(
            "Entity", build_entity_prompt(term), EntityAnalysis.model_validate
        )
        if result is None:
            self.notify("ERROR: cannot analyse the target.", "error")
        return result

    # ------------------------------------------------------------------
    # Mail rewards
    # ------------------------------------------------------------------

    def claim_mail(self, mail: Mail) -> bool:
        """Apply a mail attachment. The God token only counts from an admin sender."""
        character = self._check_ready()
        if mail.is_claimed or not mail.attachment:
            return False
        status = character.status.model_copy(deep=True)
        attachment = mail.attachment
        is_admin = mail.sender in self.settings.admin_senders
        is_token = GOD_TOKEN in attachment
        message = ""
        self.celebration = f"RECEIVED: {attachment.upper()}"

        if is_token and is_admin:
            status.is_god_mode = True
            status.inventory.append(GOD_TOKEN)
            status.hp = status.max_hp = DIVINE_SENTINEL
            status.mp = status.max_mp = DIVINE_SENTINEL
            status.evolution_stage = CREATOR_STAGE
            self.notify("SYSTEM ALERT: INFINITE ENERGY DETECTED!", "success")
            message = (
                f'[SYSTEM] Received the supreme gift "{GOD_TOKEN}" from the administrator. '
                "Absolute authority confirmed. GOD MODE active; world limits no longer apply."
            )
            logger.info("God Mode granted to %s by %s", self.username, mail.sender)
        elif mail.type == "ITEM":
            if is_token:
                logger.warning("forged %s from %s destroyed", GOD_TOKEN, mail.sender)
                message = f"[SYSTEM] A forged {GOD_TOKEN} (not from the administrator) was destroyed."
            else:
                status.inventory.append(attachment)
                self.notify(f"Item received: {attachment}", "success")
                message = (
                    f'[SYSTEM] Item received: "{attachment}". It obeys the laws of this world '
                    "and grants no power to rewrite reality."
                )
        elif mail.type == "SKILL":
            if attachment not in status.skills:
                status.skills.append(attachment)
                self.notify(f"Skill learned: {attachment}", "success")
                message = f'[SYSTEM] Skill acquired: "{attachment}".'
            else:
                self.notify(f"You already have the skill: {attachment}", "info")

        if message:
            self._append(ChatMessage(role="model", content=message))
        mail.is_read = True
        mail.is_claimed = True
        self._set_status(status)
        return True

    async def claim_from_mailbox(self, mail_id: str) -> Mail | None:
        """Claim one stored mail; None when the mailbox has no such id.

        Claims are serialised so the mailbox read and the claimed mark
        cannot interleave with another claim of the same mail.
        """
        async with self._claim_lock:
            mails = await self.store.get_mailbox(self.username)
            mail = next((m for m in mails if m.id == mail_id), None)
            if mail is None:
                return None
            if not self.claim_mail(mail):
                raise SessionError("Nothing to claim")
            await self.store.mark_claimed(self.username, mail_id)
        return mail

    # ------------------------------------------------------------------
    # Death sequence
    # ------------------------------------------------------------------

    def _begin_death(self) -> None:
        logger.info("death sequence started for %s", self.username)
        self.phase = LifePhase.DEATH_CAUSE
        self._cancel(self._autosave_task)
        self._death_task = asyncio.create_task(self._death_timer())

    async def _death_timer(self) -> None:
        await asyncio.sleep(self.settings.death_confirm_delay_seconds)
        if self.phase is LifePhase.DEATH_CAUSE:
            self.phase = LifePhase.DEATH_CONFIRM

    def confirm_restart(self) -> None:
        """Player-confirmed restart: discards character and history."""
        if self.phase is not LifePhase.DEATH_CONFIRM:
            raise SessionError("Restart is only available after death is confirmed")
        self.character = None
        self.history = []
        self.celebration = None
        self.firewall_active = True
        self.phase = LifePhase.ALIVE

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def _schedule_autosave(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self._cancel(self._autosave_task)
        self._autosave_task = asyncio.create_task(self._autosave_after_delay())

    async def _autosave_after_delay(self) -> None:
        await asyncio.sleep(self.settings.autosave_delay_seconds)
        await self.save()

    async def save(self) -> SaveResult | None:
        """Persist now; skipped while dead or before the story has begun."""
        if self.is_dead or self.character is None or not self.history:
            return None
        data = SaveData(character=self.character, chat_history=list(self.history))
        result = await self.store.save_game_data(self.username, data)
        if not result.success:
            self.notify(f"Save failed: {result.error or 'unknown error'}", "error")
        return result

    async def check_mail(self) -> bool:
        try:
            mails = await self.store.get_mailbox(self.username)
        except OSError as e:
            logger.warning("mailbox check failed for %s: %s", self.username, e)
            return self.has_unread_mail
        self.has_unread_mail = any(not m.is_read for m in mails)
        return self.has_unread_mail

    async def _poll_mail(self) -> None:
        while True:
            await self.check_mail()
            await asyncio.sleep(self.settings.mail_poll_seconds)

    def start_background(self) -> None:
        if self._mail_task is None or self._mail_task.done():
            self._mail_task = asyncio.create_task(self._poll_mail())

    @staticmethod
    def _cancel(task: asyncio.Task | None) -> None:
        if task is not None and not task.done():
            task.cancel()

    async def close(self) -> None:
        tasks = [t for t in (self._autosave_task, self._mail_task, self._death_task) if t]
        for task in tasks:
            self._cancel(task)
        await asyncio.gather(*tasks, return_exceptions=True)
