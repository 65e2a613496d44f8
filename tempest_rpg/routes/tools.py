"""Analysis tools, mailbox and battle request endpoints."""

from fastapi import APIRouter, HTTPException, Request

from tempest_rpg.models import BattleRequest
from tempest_rpg.pipeline import SessionError

from .models import AnalyzeBody, BattleBody
from .session import get_session, session_error, session_state

router = APIRouter()


@router.post("/players/{username}/appraise")
async def appraise(username: str, request: Request):
    """Appraise the most recent subject of the story."""
    session = await get_session(request, username)
    try:
        result = await session.appraise()
    except SessionError as e:
        raise session_error(e)
    if result is None:
        raise HTTPException(502, "Appraisal unavailable")
    return result.model_dump(by_alias=True)


@router.post("/players/{username}/radar")
async def radar(username: str, request: Request):
    """Scan nearby entities; empty list when the backend gave nothing."""
    session = await get_session(request, username)
    try:
        entities = await session.scan_surroundings()
    except SessionError as e:
        raise session_error(e)
    return [e.model_dump(by_alias=True) for e in entities]


@router.post("/players/{username}/analyze")
async def analyze(username: str, body: AnalyzeBody, request: Request):
    session = await get_session(request, username)
    try:
        result = await session.analyze_entity(body.term)
    except SessionError as e:
        raise session_error(e)
    if result is None:
        raise HTTPException(502, "Analysis unavailable")
    return result.model_dump(by_alias=True)


@router.get("/players/{username}/mail")
async def list_mail(username: str, request: Request):
    session = await get_session(request, username)
    mails = await session.store.get_mailbox(username)
    session.has_unread_mail = any(not m.is_read for m in mails)
    return [m.model_dump(by_alias=True) for m in mails]


@router.post("/players/{username}/mail/{mail_id}/claim")
async def claim_mail(username: str, mail_id: str, request: Request):
    """Apply a mail attachment to the character and mark it claimed."""
    session = await get_session(request, username)
    try:
        mail = await session.claim_from_mailbox(mail_id)
    except SessionError as e:
        raise session_error(e)
    if mail is None:
        raise HTTPException(404, "Mail not found")
    return session_state(session)


@router.post("/players/{username}/battles")
async def request_battle(username: str, body: BattleBody, request: Request):
    """Challenge another player; both sides' HP are snapshotted now."""
    session = await get_session(request, username)
    try:
        target = await request.app.state.store.load_game_data(body.target)
    except ValueError as e:
        raise HTTPException(400, str(e))
    if target is None:
        raise HTTPException(404, "Target player has no character")
    mine = session.character.status
    theirs = target.character.status
    battle_id = await request.app.state.store.create_battle(BattleRequest(
        challenger=username,
        target=body.target,
        server_id=body.server_id,
        p1_hp=mine.hp,
        p1_max_hp=mine.max_hp,
        p2_hp=theirs.hp,
        p2_max_hp=theirs.max_hp,
    ))
    return {"id": battle_id}
