"""Character creation, load, turn, skill and restart endpoints."""

from fastapi import APIRouter, HTTPException, Request

from tempest_rpg.models import new_character
from tempest_rpg.pipeline import GameSession, SessionError

from .models import ChatBody, CreateCharacter, UseSkillBody

router = APIRouter()


def _new_session(request: Request, username: str) -> GameSession:
    state = request.app.state
    session = GameSession(
        username,
        None,
        backend=state.backend,
        dispatcher=state.dispatcher,
        store=state.store,
        settings=state.settings,
    )
    state.sessions[username] = session
    return session


async def get_session(request: Request, username: str) -> GameSession:
    """Return the live session, loading the player's save on first use."""
    sessions: dict[str, GameSession] = request.app.state.sessions
    session = sessions.get(username)
    if session is not None and session.character is not None:
        return session
    try:
        save = await request.app.state.store.load_game_data(username)
    except ValueError as e:
        raise HTTPException(400, str(e))
    if save is None:
        raise HTTPException(404, "No character for this player")
    session = session or _new_session(request, username)
    session.new_game(save.character, save.chat_history)
    session.start_background()
    return session


def session_state(session: GameSession) -> dict:
    character = session.character
    return {
        "username": session.username,
        "character": character.model_dump(by_alias=True) if character else None,
        "history": [m.model_dump(by_alias=True) for m in session.history],
        "firewallActive": session.firewall_active,
        "phase": session.phase.value,
        "busy": session.is_busy,
        "celebration": session.celebration,
        "hasUnreadMail": session.has_unread_mail,
        "notifications": [
            {"id": n.id, "message": n.message, "level": n.level}
            for n in session.notifications
        ],
    }


def session_error(e: SessionError) -> HTTPException:
    return HTTPException(409, str(e))


@router.post("/players/{username}/character")
async def create_character(username: str, body: CreateCharacter, request: Request):
    """Create a fresh character, replacing any run in memory."""
    character = new_character(
        name=body.name,
        race=body.race,
        unique_skill=body.unique_skill,
        reincarnation_reason=body.reincarnation_reason,
        location=body.location,
        difficulty=body.difficulty,
        attributes=body.attributes,
    )
    session = request.app.state.sessions.get(username) or _new_session(request, username)
    if session.is_busy:
        raise HTTPException(409, "A turn is already in progress")
    session.new_game(character)
    session.start_background()
    return session_state(session)


@router.get("/players/{username}/session")
async def get_state(username: str, request: Request):
    """Current character, history, notifications and phase."""
    session = await get_session(request, username)
    return session_state(session)


@router.post("/players/{username}/start")
async def start_story(username: str, request: Request):
    """Generate the opening scene when the history is empty."""
    session = await get_session(request, username)
    try:
        await session.start()
    except SessionError as e:
        raise session_error(e)
    return session_state(session)


@router.post("/players/{username}/chat")
async def chat(username: str, body: ChatBody, request: Request):
    """Send player input (action text or a firewall command)."""
    session = await get_session(request, username)
    try:
        result = await session.send(body.message)
    except SessionError as e:
        raise session_error(e)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return {
        "status": result.status,
        "messages": [m.model_dump(by_alias=True) for m in result.messages],
        "rejected": bool(result.reconcile and result.reconcile.rejected),
        "state": session_state(session),
    }


@router.post("/players/{username}/skills/{skill}/use")
async def use_skill(username: str, skill: str, body: UseSkillBody, request: Request):
    """Activate a skill; may answer needs_confirmation when mana is short."""
    session = await get_session(request, username)
    try:
        result = await session.use_skill(skill, confirmed=body.confirmed)
    except SessionError as e:
        raise session_error(e)
    return {"status": result.status, "cost": result.cost, "state": session_state(session)}


@router.post("/players/{username}/skills/{skill}/equip")
async def toggle_equip(username: str, skill: str, request: Request):
    """Equip or unequip a skill (max 3 equipped)."""
    session = await get_session(request, username)
    try:
        ok = session.toggle_equip(skill)
    except SessionError as e:
        raise session_error(e)
    return {"ok": ok, "state": session_state(session)}


@router.delete("/players/{username}/notifications/{notification_id}")
async def dismiss_notification(username: str, notification_id: int, request: Request):
    session = await get_session(request, username)
    session.dismiss(notification_id)
    return {"ok": True}


@router.post("/players/{username}/restart")
async def confirm_restart(username: str, request: Request):
    """Confirm restart after death; discards character and history."""
    session = request.app.state.sessions.get(username)
    if session is None:
        session = await get_session(request, username)
    try:
        session.confirm_restart()
    except SessionError as e:
        raise session_error(e)
    await request.app.state.store.delete_game_data(username)
    return session_state(session)
