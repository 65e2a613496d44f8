"""Turn pipeline: dispatch, reconciliation and the session controller.

Per turn:
  player input -> GameSession.send()
    -> build_narrative_prompt -> SmartDispatcher.execute("Story")    -> narrative text
    -> history append
    -> build_status_prompt    -> SmartDispatcher.execute("StatusUpdate") -> proposed status
    -> reconcile()            -> sanitised status + notices + celebration + death edge
    -> GameSession applies the status and schedules the autosave

The dispatcher walks model tiers (richest first) and credentials (rotating
offset) until one attempt succeeds; exhaustion yields None and the session
falls back to a fixed narrative line or keeps the previous status.
"""

from .dispatch import DispatcherState, SmartDispatcher, is_quota_error, is_retryable  # noqa: F401
from .reconciler import (  # noqa: F401
    Delta,
    Divine,
    Mortal,
    ReconcileResult,
    parse_proposed_status,
    reconcile,
    resource_mode,
)
from .session import (  # noqa: F401
    GameSession,
    LifePhase,
    SessionBusyError,
    SessionDeadError,
    SessionError,
    SkillUseResult,
    TurnResult,
)
