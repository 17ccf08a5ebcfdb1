from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from oops.errors import TransportError
from oops.schemas import CancelRequest, CancelResult, CommandReceipt, RunState
from oops.services.cancellation import cancellation_key
from oops.worker import get_runtime

LOGGER = logging.getLogger("oops.api")

router = APIRouter(prefix="/api", tags=["api"])


def _unwrap_push(body: bytes) -> Optional[bytes]:
    """Return the command bytes from a Pub/Sub push envelope, or the body itself."""
    try:
        document = json.loads(body or b"{}")
    except ValueError:
        return body
    message = document.get("message") if isinstance(document, dict) else None
    if not isinstance(message, dict) or "data" not in message:
        return body
    try:
        return base64.b64decode(message["data"], validate=True)
    except (binascii.Error, TypeError, ValueError):
        return None


@router.post("/commands", response_model=CommandReceipt, status_code=202)
async def submit_command(request: Request) -> CommandReceipt:
    payload = _unwrap_push(await request.body())
    if payload is None:
        LOGGER.warning("Dropping push message with undecodable data")
        return CommandReceipt(accepted=False, detail="undecodable push data")
    runtime = get_runtime()
    handled = await run_in_threadpool(runtime.coordinator.handle, payload)
    return CommandReceipt(accepted=handled)


@router.post("/cancellations", response_model=CancelResult)
async def cancel_run(payload: CancelRequest) -> CancelResult:
    key = payload.key or cancellation_key({"pr_number": payload.pr_number, "branch": payload.branch})
    if not key:
        raise HTTPException(status_code=422, detail="Provide key, pr_number or branch")
    runtime = get_runtime()
    return CancelResult(key=key, cancelled=runtime.registry.cancel(key))


@router.get("/runs/{run_id}", response_model=RunState)
async def get_run(run_id: str) -> RunState:
    runtime = get_runtime()
    try:
        remaining = await run_in_threadpool(runtime.tracker.get, run_id)
    except TransportError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return RunState(run_id=run_id, remaining=remaining, tracker=runtime.tracker.name)
