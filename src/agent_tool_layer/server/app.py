"""FastAPI surface for the payment-settlement core."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Awaitable, Callable, Optional

import uvicorn
from fastapi import APIRouter, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agent_tool_layer.core.service import SettlementService
from agent_tool_layer.errors import (
    InsufficientBalance,
    SettlementError,
    UpstreamExecutionError,
)
from agent_tool_layer.payments.challenge import www_authenticate

logger = logging.getLogger("agent_tool_layer.server")

ServiceFactory = Callable[[], Awaitable[SettlementService]]

router = APIRouter()


class ExecuteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tool_id: str = Field(alias="toolId", min_length=1)
    params: dict = Field(default_factory=dict)


def _service(request: Request) -> SettlementService:
    return request.app.state.service


# ------------------------------------------------------------------
# Error mapping
# ------------------------------------------------------------------


async def _insufficient_balance(request: Request, exc: InsufficientBalance) -> JSONResponse:
    service = _service(request)
    if exc.challenge is None:
        return JSONResponse(exc.to_dict(), status_code=402)
    return JSONResponse(
        exc.challenge.to_wire(),
        status_code=402,
        headers={"WWW-Authenticate": www_authenticate(service.config.payments.realm)},
    )


async def _upstream_failed(request: Request, exc: UpstreamExecutionError) -> JSONResponse:
    body = exc.to_dict()
    body["executionId"] = exc.execution_id
    return JSONResponse(body, status_code=exc.status_code)


async def _settlement_error(request: Request, exc: SettlementError) -> JSONResponse:
    if exc.status_code >= 500 and exc.status_code not in (502, 503):
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


# ------------------------------------------------------------------
# API routes
# ------------------------------------------------------------------


@router.get("/health")
async def health(request: Request):
    service = _service(request)
    return {"status": "ok", **service.status()}


@router.post("/api/tools/execute")
async def api_execute(
    request: Request,
    body: dict,
    x_wallet: Optional[str] = Header(None),
    x_payment_chain: Optional[str] = Header(None),
    x_payment: Optional[str] = Header(None),
):
    service = _service(request)
    if not x_wallet:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    if not body.get("toolId"):
        return JSONResponse({"error": "Missing toolId"}, status_code=400)
    try:
        payload = ExecuteRequest.model_validate(body)
    except ValidationError as exc:
        return JSONResponse(
            {"error": "Invalid request body", "details": exc.errors(include_url=False)},
            status_code=400,
        )
    chain = x_payment_chain or service.config.default_chain

    outcome = await service.gate.execute(
        agent=x_wallet,
        tool_id=payload.tool_id,
        chain=chain,
        params=payload.params,
        payment_header=x_payment,
    )
    return {
        "executionId": outcome.execution.id,
        "status": outcome.execution.status.value,
        "cost": str(outcome.execution.cost),
        "chain": outcome.execution.chain,
        "result": outcome.result.body,
        "upstreamStatus": outcome.result.status_code,
    }


@router.get("/api/executions")
async def api_executions(
    request: Request,
    agent: str = Query(...),
    limit: int = Query(100, ge=1, le=1000),
):
    service = _service(request)
    records = await service.store.list_by_agent(agent, limit=limit)
    return [r.to_dict() for r in records]


@router.get("/api/executions/{execution_id}")
async def api_execution(request: Request, execution_id: str):
    service = _service(request)
    record = await service.store.get(execution_id)
    if record is None:
        return JSONResponse({"error": "Execution not found"}, status_code=404)
    return record.to_dict()


@router.get("/api/escrow/balance")
async def api_balance(request: Request, x_wallet: Optional[str] = Header(None)):
    service = _service(request)
    if not x_wallet:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    balances = await service.balances(x_wallet)
    return {
        "agent": x_wallet,
        "balances": {
            b.chain: {
                "balance": str(b.balance),
                "reserved": str(b.reserved),
                "available": str(b.available),
                "updatedAt": b.updated_at.isoformat(),
            }
            for b in balances
        },
    }


@router.get("/api/settlement/batches")
async def api_batches(
    request: Request,
    chain: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
):
    service = _service(request)
    batches = await service.batches.list_batches(chain=chain, limit=limit)
    return [b.to_dict() for b in batches]


@router.post("/api/settlement/{chain}/trigger")
async def api_trigger(request: Request, chain: str):
    service = _service(request)
    if chain not in service.scheduler.workers:
        return JSONResponse({"error": f"Chain '{chain}' is not configured"}, status_code=404)
    accepted = service.scheduler.trigger(chain)
    return {"chain": chain, "triggered": accepted}


# ------------------------------------------------------------------
# App factory
# ------------------------------------------------------------------


def create_app(
    service_factory: Optional[ServiceFactory] = None,
    start_workers: bool = True,
) -> FastAPI:
    """Build the API app.

    *service_factory* is awaited on startup; it defaults to loading the
    deployment in the current directory.  Settlement workers run for the
    lifetime of the app unless *start_workers* is false.
    """
    factory = service_factory or SettlementService.load

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service = await factory()
        app.state.service = service
        if start_workers:
            await service.start()
        logger.info(f"API started for '{service.config.name}'")
        try:
            yield
        finally:
            await service.shutdown()

    app = FastAPI(title="Agent Tool Layer", lifespan=lifespan)
    app.add_exception_handler(InsufficientBalance, _insufficient_balance)
    app.add_exception_handler(UpstreamExecutionError, _upstream_failed)
    app.add_exception_handler(SettlementError, _settlement_error)
    app.include_router(router)
    return app


# ------------------------------------------------------------------
# Runner
# ------------------------------------------------------------------


def run_server(host: str = "127.0.0.1", port: int = 8402, base_path: Path | None = None) -> None:
    async def _load() -> SettlementService:
        return await SettlementService.load(base_path)

    uvicorn.run(create_app(_load), host=host, port=port, log_level="info")
