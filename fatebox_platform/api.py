"""
Settlement API - HTTP surface of the box settlement engine.

These endpoints drive individual boxes and expose vault economics:
  - Box lifecycle (track, commit, reveal, settle, refund)
  - Batch status for dashboards (rate-limited sweep)
  - Vault funding, reserve, withdrawal
  - Operator: manual watchdog run

Every box response carries status in {succeeded, not_ready, failed}.
Authentication is handled upstream (gateway); owner fields are checked
against the on-ledger owner only.
"""

import os
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from fatebox import economics
from fatebox.engine import SettlementEngine
from fatebox.errors import (
    BoxNotFound, ExternalServiceError, FateboxError, InsufficientVaultBalance,
    OperationStatus, OracleNotReady, PreconditionViolation, RevealWindowExpired,
)
from fatebox.luck import format_time_to_max_luck, time_to_max_luck

logger = logging.getLogger("fatebox.platform.api")


# ============================================================
# MODELS
# ============================================================

class TrackBoxRequest(BaseModel):
    """Sent by the purchase flow once the box mint confirms."""
    box_id: str = Field(..., max_length=200)
    project_id: str = Field(..., max_length=100)

class OwnerRequest(BaseModel):
    owner: Optional[str] = Field(None, max_length=200)

class SettleRequest(BaseModel):
    owner: Optional[str] = Field(None, max_length=200)
    choose_honorary: bool = False

class BatchStatusRequest(BaseModel):
    box_ids: list[str]

class WithdrawRequest(BaseModel):
    amount: int
    recipient: str = Field(..., max_length=200)

class WatchdogRequest(BaseModel):
    project_id: Optional[str] = Field(None, max_length=100)
    dry_run: bool = False


# ============================================================
# HELPERS
# ============================================================

def _succeeded(payload: dict) -> dict:
    return {"status": OperationStatus.SUCCEEDED.value, **payload}


def _error_response(exc: FateboxError) -> JSONResponse:
    body = {"status": exc.status.value, "error": exc.message}
    if exc.box_id:
        body["box_id"] = exc.box_id

    if isinstance(exc, OracleNotReady):
        code = 202
    elif isinstance(exc, RevealWindowExpired):
        code = 409
        body["refund_pending"] = True
    elif isinstance(exc, BoxNotFound):
        code = 404
    elif isinstance(exc, InsufficientVaultBalance):
        code = 409
        body["required"] = exc.required
        body["available"] = exc.available
    elif isinstance(exc, PreconditionViolation):
        code = 409
    elif isinstance(exc, ExternalServiceError):
        code = 502
    else:
        code = 500
    return JSONResponse(status_code=code, content=body)


# ============================================================
# CREATE APP
# ============================================================

def create_app(engine: SettlementEngine, lifespan=None) -> FastAPI:
    """Create the settlement FastAPI application around a built engine."""

    app = FastAPI(
        title="Fatebox Settlement",
        description="Box lifecycle, commit-reveal settlement and vault economics",
        version="1.0.0",
        lifespan=lifespan,
    )

    _origins_env = os.getenv("CORS_ORIGINS", "http://localhost:3000")
    origins = [o.strip() for o in _origins_env.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(FateboxError)
    async def fatebox_error_handler(request: Request, exc: FateboxError):
        if isinstance(exc, ExternalServiceError) and not isinstance(exc, OracleNotReady):
            logger.warning(f"{request.url.path}: {exc.message}")
        return _error_response(exc)

    def _project(project_id: str):
        cfg = engine.projects.get(project_id)
        if cfg is None:
            raise HTTPException(status_code=404, detail=f"Unknown project {project_id}")
        return cfg

    # ── HEALTH ──

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "service": "fatebox-settlement",
            "stats": engine.get_status(),
        }

    # ── BOX LIFECYCLE ──

    @app.post("/boxes")
    async def track_box(req: TrackBoxRequest):
        _project(req.project_id)
        box = await engine.state.track(req.box_id, req.project_id)
        return _succeeded({"box": box.to_dict()})

    @app.get("/boxes/{box_id}")
    async def get_box(box_id: str):
        box = engine.state.store.get(box_id)
        if box is None:
            raise HTTPException(status_code=404, detail="Box not found")
        return box.to_dict()

    @app.post("/boxes/{box_id}/commit")
    async def commit_box(box_id: str, req: OwnerRequest = OwnerRequest()):
        result = await engine.orchestrator.commit_box(box_id, caller=req.owner)
        return _succeeded(result.to_dict())

    @app.post("/boxes/{box_id}/reveal")
    async def reveal_box(box_id: str, req: OwnerRequest = OwnerRequest()):
        result = await engine.orchestrator.reveal_box(box_id, caller=req.owner)
        return _succeeded(result.to_dict())

    @app.post("/boxes/{box_id}/settle")
    async def settle_box(box_id: str, req: SettleRequest = SettleRequest()):
        result = await engine.settlement.settle_box(
            box_id, caller=req.owner, choose_honorary=req.choose_honorary,
        )
        return _succeeded(result.to_dict())

    @app.post("/boxes/{box_id}/refund")
    async def refund_box(box_id: str, req: OwnerRequest = OwnerRequest()):
        result = await engine.settlement.refund_box(box_id, caller=req.owner)
        return _succeeded(result.to_dict())

    @app.post("/boxes/status")
    async def batch_status(req: BatchStatusRequest):
        """Live phase + luck for up to 50 boxes."""
        report = await engine.sweep.batch_status(req.box_ids)
        return _succeeded(report)

    @app.get("/owners/{owner}/boxes")
    async def owner_boxes(owner: str, page: int = 0, page_size: int = 50):
        page_size = max(1, min(page_size, 100))
        boxes = engine.state.store.boxes_for_owner(owner, page=page, page_size=page_size)
        return {
            "owner": owner,
            "page": page,
            "page_size": page_size,
            "boxes": [b.to_dict() for b in boxes],
        }

    # ── ECONOMICS ──

    @app.get("/economics/minimum-funding")
    async def minimum_funding(box_price: int):
        if box_price <= 0:
            raise HTTPException(status_code=400, detail="box_price must be > 0")
        return {
            "box_price": box_price,
            "multiple": engine.vault.policy.FUNDING_MULTIPLE,
            "minimum_funding": engine.vault.compute_minimum_funding(box_price),
        }

    @app.get("/economics/reserve")
    async def reserve(project_id: str, count: Optional[int] = None):
        cfg = _project(project_id)
        unsettled = engine.state.store.count_unsettled(project_id) if count is None else count
        return {
            "project_id": project_id,
            "box_price": cfg.box_price,
            "count": unsettled,
            "reserve_multiplier": float(economics.project_reserve_multiplier(cfg)),
            "reserve": engine.vault.compute_withdrawal_reserve(project_id, count),
        }

    # ── PROJECTS ──

    @app.get("/projects/{project_id}")
    async def project_config(project_id: str):
        cfg = _project(project_id)
        return {
            "config": cfg.to_dict(),
            "time_to_max_luck_seconds": time_to_max_luck(
                cfg.luck_interval_seconds, cfg.base_luck, cfg.max_luck),
            "time_to_max_luck": format_time_to_max_luck(
                cfg.luck_interval_seconds, cfg.base_luck, cfg.max_luck),
        }

    @app.get("/projects/{project_id}/metrics")
    async def project_metrics(project_id: str):
        _project(project_id)
        return await engine.vault.metrics(project_id)

    @app.post("/projects/{project_id}/withdraw")
    async def withdraw(project_id: str, req: WithdrawRequest):
        _project(project_id)
        result = await engine.vault.withdraw(project_id, req.amount, req.recipient)
        return _succeeded(result)

    # ── OPERATOR ──

    @app.post("/watchdog/run")
    async def run_watchdog(req: WatchdogRequest = WatchdogRequest()):
        report = await engine.watchdog.run_once(project_id=req.project_id, dry_run=req.dry_run)
        return _succeeded(report.to_dict())

    return app
