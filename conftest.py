from pathlib import Path
from typing import Any

import pytest

from tempest_rpg.config import Settings
from tempest_rpg.models import ModelTier, new_character
from tempest_rpg.pipeline import GameSession, SmartDispatcher
from tempest_rpg.storage import JsonGameStore

TIERS = [
    ModelTier(id="rich", display_name="RICH"),
    ModelTier(id="lite", display_name="LITE"),
]


# ---------------------------------------------------------------------------
# StubBackend: one queue per call kind, items returned (or raised) in order
# ---------------------------------------------------------------------------

class StubBackend:
    """Deterministic backend stand-in for tests.

    `narrate` and `json` are lists of replies in call order. A reply that is
    an Exception instance is raised instead of returned.
    """

    def __init__(self, narrate: list | None = None, json: list | None = None) -> None:
        self._queues: dict[str, list] = {
            "narrate": list(narrate or []),
            "json": list(json or []),
        }
        self.calls: list[tuple[str, str, str, Any]] = []

    def _next(self, kind: str) -> Any:
        queue = self._queues[kind]
        if not queue:
            raise AssertionError(
                f"StubBackend: unexpected {kind} call (no replies queued). "
                f"calls so far: {[c[:3] for c in self.calls]}"
            )
        reply = queue.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def narrate(self, credential, tier, system_instruction, history, message) -> str:
        self.calls.append(("narrate", credential, tier.id, {
            "system": system_instruction,
            "history": list(history),
            "message": message,
        }))
        return self._next("narrate")

    async def generate_json(self, credential, tier, prompt, schema) -> Any:
        self.calls.append(("json", credential, tier.id, {"prompt": prompt, "schema": schema}))
        return self._next("json")

    def queue(self, kind: str, *replies: Any) -> None:
        self._queues[kind].extend(replies)

    def count(self, kind: str) -> int:
        return sum(1 for c in self.calls if c[0] == kind)

    def assert_exhausted(self) -> None:
        leftover = {k: v for k, v in self._queues.items() if v}
        if leftover:
            raise AssertionError(f"StubBackend: unused replies remain: {leftover}")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        credentials=["k1"],
        model_tiers=TIERS,
        autosave_delay_seconds=0.01,
        mail_poll_seconds=0.01,
        death_confirm_delay_seconds=0.01,
        admin_senders=["ADMIN"],
        data_dir=tmp_path / "data",
    )


@pytest.fixture
def store(settings: Settings) -> JsonGameStore:
    return JsonGameStore(settings.data_dir)


@pytest.fixture
def dispatcher(settings: Settings) -> SmartDispatcher:
    return SmartDispatcher(settings.model_tiers, settings.credentials, cooldown=60.0)


@pytest.fixture
def make_session(settings, store, dispatcher):
    """Factory: make_session(backend, character=None, history=None, **kwargs)."""

    def factory(backend, character=None, history=None, **kwargs) -> GameSession:
        session = GameSession(
            "rimuru",
            character or new_character("Rimuru", "Slime", unique_skill="Predator"),
            history,
            backend=backend,
            dispatcher=dispatcher,
            store=store,
            settings=settings,
            **kwargs,
        )
        return session

    return factory
