from __future__ import annotations

import os

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from provisioner.models import PlanRequest, ApplyRequest, DestroyRequest
from provisioner.services.errors import ConflictError, OrchestratorError, ValidationError
from provisioner.services.engine import OrchestratorEngine
from provisioner.services.service_registry import DEFAULT_REGISTRY
from provisioner.services.utils import configure_logging, get_allowed_origins

load_dotenv()
configure_logging(os.getenv("LABSTACK_DEBUG", "").lower() in ("1", "true", "yes"))
engine = OrchestratorEngine.from_env()


app = FastAPI(title="AWS labs declarations → provisioning orchestrator", version="0.3.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _bad_request(e: OrchestratorError) -> HTTPException:
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail={"message": "validation failed", "errors": e.errors})
    if isinstance(e, ConflictError):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


@app.get("/health")
def health():
    return {
        "status": "ok",
        "regionDefault": engine.settings.region,
        "provider": engine.settings.provider,
        "stateDir": str(engine.settings.state_dir),
        "concurrency": engine.settings.concurrency,
        "supportedTypes": len(DEFAULT_REGISTRY.get_supported_kinds()),
    }


@app.post("/plan")
def plan(req: PlanRequest):
    try:
        return engine.plan(req.stack, req.targets).to_dict()
    except OrchestratorError as e:
        raise _bad_request(e)


@app.post("/apply")
def apply(req: ApplyRequest):
    try:
        return engine.apply(
            req.stack,
            targets=req.targets,
            concurrency=req.concurrency,
            dry_run=req.dry_run,
            rotate=req.rotate,
        ).to_dict()
    except OrchestratorError as e:
        raise _bad_request(e)


@app.post("/destroy")
def destroy(req: DestroyRequest):
    try:
        return engine.destroy(
            req.project,
            req.env,
            targets=req.targets,
            concurrency=req.concurrency,
            dry_run=req.dry_run,
        ).to_dict()
    except OrchestratorError as e:
        raise _bad_request(e)


@app.post("/cancel/{project}/{env}")
def cancel(project: str, env: str):
    return {"cancelled": engine.cancel(project, env)}
