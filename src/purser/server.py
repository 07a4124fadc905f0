"""
HTTP surface of the facilitator.

Routes:
    GET  /health     liveness, uptime, replay guard size, fee reserve
    GET  /supported  payment kinds this facilitator settles
    POST /verify     check a payment without submitting it
    POST /settle     verify, co-sign and submit a payment
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from . import __version__
from .audit import AuditLogger, StreamAuditLogger
from .config import FacilitatorSettings
from .errors import RpcError
from .facilitator import Facilitator
from .key_managers import EncryptedFileKeyManager
from .rpc import SolanaRpc

logger = logging.getLogger(__name__)


class RequirementsBody(BaseModel):
    model_config = ConfigDict(extra="allow")

    scheme: str = Field(..., min_length=1)
    network: str = Field(..., min_length=1)
    asset: str = Field(..., min_length=32, max_length=44)
    amount: str = Field(..., pattern=r"^\d+$")
    payTo: str = Field(..., min_length=32, max_length=44)
    maxTimeoutSeconds: Optional[int] = Field(None, gt=0)
    extra: Optional[dict[str, Any]] = None


class PayloadBody(BaseModel):
    model_config = ConfigDict(extra="allow")

    transaction: str = Field(..., min_length=1)


class PaymentPayloadBody(BaseModel):
    model_config = ConfigDict(extra="allow")

    x402Version: Optional[int] = None
    payload: PayloadBody


class FacilitatorRequest(BaseModel):
    paymentPayload: PaymentPayloadBody
    paymentRequirements: RequirementsBody


def _issue(error: dict) -> dict:
    path = [str(p) for p in error.get("loc", ()) if p != "body"]
    return {"path": ".".join(path), "message": error.get("msg", "invalid value")}


def create_app(facilitator: Facilitator, clock=time.monotonic) -> FastAPI:
    app = FastAPI(title="purser facilitator", version=__version__)
    started = clock()

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        issues = [_issue(e) for e in exc.errors()]
        return JSONResponse(
            status_code=400,
            content={
                "error": "VALIDATION_ERROR",
                "message": "Request body failed validation",
                "issues": issues,
            },
        )

    @app.get("/health")
    def health():
        try:
            reserve = facilitator.fee_monitor.check_balance()
            gas_status: dict[str, Any] = {
                "address": reserve.address,
                "balanceLamports": reserve.balance_lamports,
                "balanceSol": reserve.balance_sol,
                "isHealthy": reserve.is_healthy,
                "estimatedOperationsRemaining": reserve.estimated_operations_remaining,
            }
        except RpcError as e:
            logger.warning("Fee reserve unavailable for health check: %s", e.message)
            gas_status = {"isHealthy": True, "error": "RPC unavailable"}

        return {
            "status": "ok",
            "version": __version__,
            "network": facilitator.network,
            "uptime": round(clock() - started, 3),
            "replayGuardSize": facilitator.replay_guard.size(),
            "gasStatus": gas_status,
        }

    @app.get("/supported")
    def supported():
        return facilitator.get_supported()

    @app.post("/verify")
    def verify(body: FacilitatorRequest):
        result = facilitator.verify(
            body.paymentPayload.model_dump(exclude_none=True),
            body.paymentRequirements.model_dump(exclude_none=True),
        )
        return JSONResponse(status_code=200 if result.is_valid else 400, content=result.to_dict())

    @app.post("/settle")
    def settle(body: FacilitatorRequest):
        result = facilitator.settle(
            body.paymentPayload.model_dump(exclude_none=True),
            body.paymentRequirements.model_dump(exclude_none=True),
        )
        return JSONResponse(status_code=200 if result.success else 400, content=result.to_dict())

    return app


def build_facilitator(
    settings: FacilitatorSettings,
    audit: Optional[AuditLogger] = None,
) -> Facilitator:
    """Wire a facilitator from settings: RPC, encrypted fee payer key, audit sink."""
    rpc = SolanaRpc(settings.solana_rpc_url)
    fee_payer = EncryptedFileKeyManager(
        Path(settings.keypair_path).expanduser(),
        settings.passphrase,
        kdf_params=settings.kdf_params,
    )
    logger.info("Facilitator fee payer %s on %s", fee_payer.address, settings.caip2)
    return Facilitator(
        rpc=rpc,
        fee_payer=fee_payer,
        settings=settings,
        audit=audit or StreamAuditLogger(),
    )
