"""Enforcement policies for rule violations.

Two philosophies coexist in the game:

  HardBlockPolicy             : the engine refuses the change outright
                                (model-signalled cheats in a status update).
  NarrativeConsequencePolicy  : the player may push on after confirming, and
                                the story is told to punish it (casting a
                                skill without enough mana).

Both sit behind EnforcementPolicy so either call site can be switched by
passing the other implementation.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol


class Verdict(str, Enum):
    ALLOW = "allow"
    BLOCK = "block"
    CONFIRM = "confirm"


@dataclass(frozen=True)
class Violation:
    kind: str  # "cheat_signal" | "insufficient_resource"
    detail: str = ""


class EnforcementPolicy(Protocol):
    def decide(self, violation: Violation) -> Verdict: ...


class HardBlockPolicy:
    def decide(self, violation: Violation) -> Verdict:
        return Verdict.BLOCK


class NarrativeConsequencePolicy:
    def decide(self, violation: Violation) -> Verdict:
        return Verdict.CONFIRM
