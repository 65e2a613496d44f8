"""Status reconciliation: merge a model-proposed status into authoritative state.

The model's structured reply is untrusted. reconcile() runs, in order:

  1. God Mode gate     : is_god_mode without the [ ∞ ] token is revoked,
                         blown-up resources are reset, the cheat is flagged
                         and a scolding system message is queued for history.
  2. Mortal clamps     : outside legitimate God Mode resources stay under the
                         mortal ceiling, hp/mp stay within their maxima,
                         level >= 1, equipped skills stay a known subset of 3.
  3. Cheat signal      : cheatDetected with the firewall up and no legitimate
                         God Mode goes to the enforcement policy; BLOCK
                         returns the previous status untouched.
  4. Strip transient fields (cheatDetected) from the committed status.
  5. Celebration       : ordered detectors, first hit wins:
                         evolution/level > quest completion > new effect > new skill.
  6. Death             : hp <= 0 outside God Mode, edge-triggered on previous hp > 0.

The previous status is never mutated; detectors compare against it as it
was before this pass.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from tempest_rpg.models import CharacterStatus, ChatMessage, ProposedStatus
from tempest_rpg.policy import EnforcementPolicy, HardBlockPolicy, Verdict, Violation

logger = logging.getLogger(__name__)

MORTAL_CEILING = 1_000_000
MORTAL_RESET = 9_999
MAX_EQUIPPED = 3

# Resource value stored for legitimate God Mode; the ceiling does not apply.
DIVINE_SENTINEL = 999_999_999_999_999

SCOLD_MESSAGE = (
    "[SYSTEM WARNING] Unauthorised attempt to enter God Mode detected. "
    "The required item [ ∞ ] is missing. The state has been revoked."
)

_RESOURCE_FIELDS = ("hp", "max_hp", "mp", "max_mp")


# ── Resource mode ────────────────────────────────────────


@dataclass(frozen=True)
class Mortal:
    ceiling: int = MORTAL_CEILING


@dataclass(frozen=True)
class Divine:
    pass


ResourceMode = Mortal | Divine


def resource_mode(status: CharacterStatus) -> ResourceMode:
    if status.is_god_mode and status.has_god_token():
        return Divine()
    return Mortal()


# ── Result types ─────────────────────────────────────────


@dataclass(frozen=True)
class Notice:
    message: str
    level: str = "info"  # info | warning | success | error


@dataclass(frozen=True)
class Delta:
    kind: str  # evolution | level | quest | effect | skill
    message: str


@dataclass
class ReconcileResult:
    status: CharacterStatus
    celebration: Delta | None = None
    cheat_flag: bool = False
    rejected: bool = False
    died: bool = False
    notices: list[Notice] = field(default_factory=list)
    system_messages: list[ChatMessage] = field(default_factory=list)


# ── Proposal parsing ─────────────────────────────────────


def parse_proposed_status(previous: CharacterStatus, raw: Any) -> ProposedStatus:
    """Validate the model's JSON; keys it left out keep their previous value."""
    if not isinstance(raw, dict):
        raise ValueError(f"Status proposal must be a JSON object, got {type(raw).__name__}")
    merged = previous.model_dump(by_alias=True)
    merged.update(raw)
    try:
        return ProposedStatus.model_validate(merged)
    except ValidationError as e:
        raise ValueError(f"Invalid status proposal: {e.error_count()} error(s)") from e


# ── Delta detectors ──────────────────────────────────────


def _evolution_or_level(prev: CharacterStatus, new: CharacterStatus) -> Delta | None:
    if new.evolution_stage != prev.evolution_stage:
        return Delta("evolution", f"EVOLUTION SUCCESSFUL: {new.evolution_stage.upper()}")
    if new.level > prev.level:
        return Delta("level", f"LEVEL UP! LEVEL {new.level}")
    return None


def _quest_completed(prev: CharacterStatus, new: CharacterStatus) -> Delta | None:
    if new.completed_quests() > prev.completed_quests():
        return Delta("quest", "QUEST COMPLETE - EVOLUTION CONDITION REACHED")
    return None


def _new_effects(prev: CharacterStatus, new: CharacterStatus) -> Delta | None:
    added = [e for e in new.active_effects if e not in prev.active_effects]
    if added:
        return Delta("effect", f"NEW STATUS: {', '.join(added)}")
    return None


def _new_skills(prev: CharacterStatus, new: CharacterStatus) -> Delta | None:
    added = [s for s in new.skills if s not in prev.skills]
    if added:
        return Delta("skill", f"SKILL ACQUIRED: {', '.join(added)}")
    return None


DeltaDetector = Callable[[CharacterStatus, CharacterStatus], Delta | None]

# Priority order; only the first hit is surfaced per pass.
DELTA_DETECTORS: list[DeltaDetector] = [
    _evolution_or_level,
    _quest_completed,
    _new_effects,
    _new_skills,
]


def detect_celebration(prev: CharacterStatus, new: CharacterStatus) -> Delta | None:
    for detector in DELTA_DETECTORS:
        delta = detector(prev, new)
        if delta is not None:
            return delta
    return None


# ── Sanitising ───────────────────────────────────────────


def _reset_over_ceiling(status: CharacterStatus, ceiling: int) -> bool:
    clamped = False
    for name in _RESOURCE_FIELDS:
        if getattr(status, name) > ceiling:
            setattr(status, name, MORTAL_RESET)
            clamped = True
    return clamped


def _apply_mortal_limits(status: CharacterStatus) -> None:
    for name in _RESOURCE_FIELDS:
        if getattr(status, name) < 0:
            setattr(status, name, 0)
    status.hp = min(status.hp, status.max_hp)
    status.mp = min(status.mp, status.max_mp)
    status.level = max(status.level, 1)


def _sanitize_equipped(status: CharacterStatus) -> None:
    equipped: list[str] = []
    for skill in status.equipped_skills:
        if skill in status.skills and skill not in equipped:
            equipped.append(skill)
    status.equipped_skills = equipped[:MAX_EQUIPPED]


def reconcile(
    previous: CharacterStatus,
    proposed: ProposedStatus,
    firewall_active: bool = True,
    policy: EnforcementPolicy | None = None,
) -> ReconcileResult:
    """Merge a proposed status into the previous one under the invariants."""
    policy = policy or HardBlockPolicy()
    prev = previous.model_copy(deep=True)
    candidate = proposed.model_copy(deep=True)
    result = ReconcileResult(status=prev)

    # 1. God Mode gate
    if candidate.is_god_mode and not candidate.has_god_token():
        logger.warning("God Mode proposed without token; revoking")
        candidate.is_god_mode = False
        _reset_over_ceiling(candidate, MORTAL_CEILING)
        result.cheat_flag = True
        result.notices.append(
            Notice("WARNING: YOU DO NOT HOLD [ ∞ ]. GOD MODE DENIED.", "error")
        )
        result.system_messages.append(ChatMessage(role="model", content=SCOLD_MESSAGE))

    # 2. Mortal clamps
    mode = resource_mode(candidate)
    if isinstance(mode, Mortal):
        if _reset_over_ceiling(candidate, mode.ceiling):
            logger.warning("Resources above mortal ceiling %d reset", mode.ceiling)
            result.notices.append(
                Notice("SYSTEM: resources beyond mortal limits were reset.", "warning")
            )
        _apply_mortal_limits(candidate)
    _sanitize_equipped(candidate)

    # 3. Explicit cheat signal
    if candidate.cheat_detected and firewall_active and isinstance(mode, Mortal):
        verdict = policy.decide(Violation("cheat_signal", "model reported cheatDetected"))
        if verdict is Verdict.BLOCK:
            logger.warning("Firewall blocked a status update flagged as cheating")
            result.rejected = True
            result.notices.append(
                Notice("WARNING: THE FIREWALL BLOCKED AN UNAUTHORISED CHANGE!", "error")
            )
            return result
        result.notices.append(Notice("SYSTEM: suspicious change let through.", "warning"))

    # 4. Strip transient fields
    status = CharacterStatus.model_validate(candidate.model_dump(exclude={"cheat_detected"}))
    result.status = status

    # 5. Celebration
    result.celebration = detect_celebration(prev, status)

    # 6. Death, edge-triggered
    if status.hp <= 0 and isinstance(mode, Mortal) and prev.hp > 0:
        result.died = True
        result.notices.append(Notice("WARNING: Critical damage. HP reached 0.", "warning"))

    return result
