"""Health check and model tier endpoints."""

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/tiers")
async def list_tiers(request: Request):
    """Configured model tiers, richest first, plus the dispatcher's current tier."""
    dispatcher = request.app.state.dispatcher
    return {
        "tiers": [t.model_dump(by_alias=True) for t in dispatcher.tiers],
        "currentTier": dispatcher.state.current_tier,
        "credentials": len(dispatcher.credentials),
    }
