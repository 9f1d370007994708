"""Buying signal endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import ConfigurationError, TransportError
from ..db.session import get_session
from ..schemas import search as search_schema
from ..schemas import signals as signals_schema
from ..services import call_signals, news_signals, orchestrator
from ..services import search as search_service
from ..services.llm import LLMUnavailableError
from ..services.gong import create_client

router = APIRouter()


@router.post("/opportunities", response_model=signals_schema.OpportunitySignalsResponse)
async def opportunity_signals(
    payload: signals_schema.OpportunitySignalsRequest,
    session: AsyncSession = Depends(get_session),
) -> signals_schema.OpportunitySignalsResponse:
    """Return call-derived signals for up to 20 opportunities."""

    signals = await call_signals.get_opportunity_signals(session, payload.opportunities)
    return signals_schema.OpportunitySignalsResponse(signals=signals)


@router.get("/accounts/{account_id}/news", response_model=signals_schema.AccountNewsResponse)
async def account_news(
    account_id: str,
    account_name: str | None = None,
    session: AsyncSession = Depends(get_session),
) -> signals_schema.AccountNewsResponse:
    """Return news-derived signals for one account."""

    result = await news_signals.get_account_news(session, account_id, account_name)
    return signals_schema.AccountNewsResponse(account_id=account_id, result=result)


@router.post("/search", response_model=search_schema.CallSearchResponse)
async def search(payload: search_schema.CallSearchRequest) -> search_schema.CallSearchResponse:
    """Answer a question over the calls in scope."""

    try:
        client = create_client()
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    async with client:
        try:
            return await search_service.search_calls(client, payload)
        except TransportError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        except LLMUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc


@router.get("/provider/status")
async def provider_status() -> dict[str, object]:
    """Check the call-recording provider credentials."""

    try:
        client = create_client()
    except ConfigurationError as exc:
        return {"connected": False, "message": str(exc)}
    async with client:
        connected, message = await client.test_connection()
    return {"connected": connected, "message": message}


@router.post("/run", response_model=signals_schema.BatchRunResponse)
async def run_batch() -> signals_schema.BatchRunResponse:
    """Run the nightly batch now and return its summary."""

    result = await orchestrator.run_nightly()
    return signals_schema.BatchRunResponse(
        call_signal_count=result.call_signal_count,
        news_signal_count=result.news_signal_count,
        errors=result.errors,
        status=result.status,
        run_at=result.run_at,
    )
