#!/usr/bin/env python3
"""
Cliper Memory Server
====================

Architecture:
- Engine: cliper.core.CliperEngine
- Store: SQLite (WAL mode) record collections, in-process fallback
- Ingestion: single serialized queue worker with bounded retry
- Retrieval: folder-scoped lexical match ranked by salience x trust
- Decisions: adaptive controller with bias drift
- Maintenance: interval/idle scheduler (tiering, log TTL, decay, insights)

Usage:
    python server.py              # Start server on localhost:42110
    python server.py --port 8000  # Custom port
"""

import os
import sys
import argparse
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

import portalocker
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from cliper.core.config import CliperConfig
from cliper.core.engine import CliperEngine
from cliper.core.errors import (
    ImportFormatError,
    LockedMemoryError,
    RecordNotFoundError,
    StorageError,
)
from cliper.core.security import initialize_security, is_security_enabled
from cliper.core.security import verify_token as core_verify_token
from cliper.core.types import (
    MEMORIES,
    PEOPLE,
    PLACES,
    REMINDERS,
    MemoryDomain,
    MemoryStatus,
    MemoryType,
    PlaceStatus,
    QueueItemType,
    Speaker,
)
from cliper.platform import get_log_dir
from cliper.version import __version__

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("Cliper")

# --- Global State ---
engine: Optional[CliperEngine] = None
_SERVER_INSTANCE_LOCK_HANDLE: Optional[portalocker.Lock] = None
_SERVER_INSTANCE_LOCK_PATH: Optional[Path] = None


# --- Request Models ---

class EnqueueRequest(BaseModel):
    content: str
    type: QueueItemType = QueueItemType.TEXT
    image_base64: Optional[str] = None


class DrainRequest(BaseModel):
    max_items: int = Field(default=100, ge=1, le=1000)


class ConsultRequest(BaseModel):
    message: str
    history: List[Dict[str, Any]] = Field(default_factory=list)
    is_observer: bool = False


class ConversationUpdateRequest(BaseModel):
    message: str


class AddMemoryRequest(BaseModel):
    content: str
    domain: MemoryDomain = MemoryDomain.GENERAL
    type: MemoryType = MemoryType.FACT
    entity: str = "user"
    speaker: Speaker = Speaker.USER
    confidence: float = 0.9
    salience: float = 0.8
    justification: str = "Added directly by user"
    metadata: Dict[str, Any] = Field(default_factory=dict)


class UpdateMemoryRequest(BaseModel):
    updates: Dict[str, Any]
    force: bool = False


class ToggleRequest(BaseModel):
    value: bool


class PersonFactRequest(BaseModel):
    name: str
    fact: str
    relation: str = "Contact"


class FactRequest(BaseModel):
    fact: str


class MergePeopleRequest(BaseModel):
    source_id: str
    target_id: str


class SplitPersonRequest(BaseModel):
    name: str
    fact: str
    reason: str = "split"


class ReminderRequest(BaseModel):
    task: str
    due_time: float


class PlaceRequest(BaseModel):
    name: str = ""
    category: str = ""
    notes: str = ""


class PlaceStatusRequest(BaseModel):
    status: PlaceStatus


class SettingsRequest(BaseModel):
    changes: Dict[str, Any]


class ImportRequest(BaseModel):
    document: Dict[str, Any]


# --- Security ---
security = HTTPBearer(auto_error=False)


async def verify_token(credentials: Optional[HTTPAuthorizationCredentials] = Security(security)):
    """FastAPI dependency for token verification."""
    if not is_security_enabled():
        return credentials
    token = credentials.credentials if credentials else None
    if not core_verify_token(token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return credentials


def _server_instance_lock_timeout_seconds() -> float:
    raw = os.environ.get("CLIPER_SERVER_INSTANCE_LOCK_TIMEOUT_SEC", "0.25").strip()
    try:
        return max(0.0, float(raw))
    except ValueError:
        logger.warning(
            "Invalid CLIPER_SERVER_INSTANCE_LOCK_TIMEOUT_SEC='%s'; using default 0.25s",
            raw,
        )
        return 0.25


def _acquire_server_instance_lock(config: CliperConfig) -> None:
    """
    Acquire an exclusive process-wide server lease for the configured data dir.

    Two servers on one data directory would run two queue workers against
    the same store.
    """
    global _SERVER_INSTANCE_LOCK_HANDLE, _SERVER_INSTANCE_LOCK_PATH

    data_dir = Path(config.data_dir)
    lock_path = data_dir / ".cliper_server.instance.lock"
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    lock_handle = portalocker.Lock(
        str(lock_path),
        mode="a",
        timeout=_server_instance_lock_timeout_seconds(),
        flags=portalocker.LOCK_EX | portalocker.LOCK_NB,
        fail_when_locked=True,
    )

    try:
        lock_handle.acquire()
    except portalocker.exceptions.LockException as exc:
        raise RuntimeError(
            "Cliper server instance lock is already held for data directory "
            f"'{data_dir}'. Reuse the existing server or stop it before starting "
            "another instance."
        ) from exc

    _SERVER_INSTANCE_LOCK_HANDLE = lock_handle
    _SERVER_INSTANCE_LOCK_PATH = lock_path
    logger.info("Acquired server instance lock: %s", lock_path)


def _release_server_instance_lock() -> None:
    """Release the process-wide server lease if held."""
    global _SERVER_INSTANCE_LOCK_HANDLE, _SERVER_INSTANCE_LOCK_PATH
    lock_handle = _SERVER_INSTANCE_LOCK_HANDLE
    lock_path = _SERVER_INSTANCE_LOCK_PATH
    _SERVER_INSTANCE_LOCK_HANDLE = None
    _SERVER_INSTANCE_LOCK_PATH = None
    if lock_handle is None:
        return

    try:
        lock_handle.release()
    except Exception as exc:
        logger.warning("Failed to release server instance lock: %s", exc)
    if lock_path is not None:
        logger.info("Released server instance lock: %s", lock_path)


# --- Application Lifecycle ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    global engine

    logger.info("Cliper Server starting...")

    try:
        config = CliperConfig.from_env()
        initialize_security(config.server.auth_token)
        _acquire_server_instance_lock(config)

        engine = CliperEngine(config)
        issues = await engine.initialize()
        if issues:
            logger.warning("Boot check reported %d issue(s)", len(issues))

        yield
    finally:
        logger.info("Shutting down Cliper Server...")
        if engine:
            await engine.shutdown()
            engine = None
        _release_server_instance_lock()
        logger.info("Cliper Server stopped.")


app = FastAPI(
    title="Cliper Memory Server",
    description="Local-first memory engine: ingestion queue, retrieval and adaptive decisions",
    version=__version__,
    lifespan=lifespan,
)


# --- Error Mapping ---

@app.exception_handler(RecordNotFoundError)
async def _not_found_handler(request: Request, exc: RecordNotFoundError):
    return JSONResponse(status_code=404, content={"success": False, "error": str(exc)})


@app.exception_handler(LockedMemoryError)
async def _locked_handler(request: Request, exc: LockedMemoryError):
    return JSONResponse(
        status_code=409,
        content={"success": False, "error": str(exc), "fields": exc.fields},
    )


@app.exception_handler(ImportFormatError)
async def _import_format_handler(request: Request, exc: ImportFormatError):
    return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})


@app.exception_handler(StorageError)
async def _storage_handler(request: Request, exc: StorageError):
    logger.error("Storage failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"success": False, "error": str(exc)})


def _engine() -> CliperEngine:
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return engine


def _ok(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


def _dump(records) -> List[Dict[str, Any]]:
    return [record.model_dump(mode="json") for record in records]


def _require_deleted(deleted: bool, collection: str, record_id: str) -> Dict[str, Any]:
    if not deleted:
        raise RecordNotFoundError(collection, record_id)
    return _ok({"deleted": record_id})


# --- Health & Lifecycle ---

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    if engine is None:
        return {"status": "initializing", "version": __version__}
    health = engine.health().model_dump(mode="json")
    health["version"] = __version__
    return health


@app.get("/status", dependencies=[Depends(verify_token)])
async def status_endpoint():
    return _ok(_engine().status())


@app.post("/boot-check", dependencies=[Depends(verify_token)])
async def boot_check_endpoint():
    eng = _engine()
    issues = eng.run_system_boot_check()
    return _ok({"issues": issues, "safe_mode": eng.safe_mode})


@app.post("/maintenance/run", dependencies=[Depends(verify_token)])
async def maintenance_run_endpoint():
    return _ok(_engine().run_maintenance())


@app.post("/factory-reset", dependencies=[Depends(verify_token)])
async def factory_reset_endpoint():
    _engine().factory_reset()
    return _ok({"reset": True})


@app.get("/export", dependencies=[Depends(verify_token)])
async def export_endpoint():
    return _ok(_engine().export_state())


@app.post("/import", dependencies=[Depends(verify_token)])
async def import_endpoint(req: ImportRequest):
    return _ok(_engine().import_state(req.document))


# --- Queue ---

@app.post("/queue", dependencies=[Depends(verify_token)])
async def enqueue_endpoint(req: EnqueueRequest):
    item = _engine().add_to_queue(req.content, req.type, image_base64=req.image_base64)
    return _ok(item.model_dump(mode="json"))


@app.get("/queue", dependencies=[Depends(verify_token)])
async def queue_endpoint():
    eng = _engine()
    return _ok({
        "items": _dump(eng.store.get_queue()),
        "abandoned": _dump(eng.store.abandoned_queue_items(eng.config.queue.max_retries)),
    })


@app.post("/queue/drain", dependencies=[Depends(verify_token)])
async def drain_endpoint(req: DrainRequest):
    eng = _engine()
    if eng.safe_mode:
        raise HTTPException(status_code=409, detail="Safe mode is active; queue processing is suspended")
    return _ok(await eng.drain_queue(req.max_items))


# --- Conversation ---

@app.post("/consult", dependencies=[Depends(verify_token)])
async def consult_endpoint(req: ConsultRequest):
    reply = await _engine().consult_brain(req.message, req.history, is_observer=req.is_observer)
    return _ok(reply.model_dump())


@app.post("/update", dependencies=[Depends(verify_token)])
async def conversation_update_endpoint(req: ConversationUpdateRequest):
    return _ok(await _engine().process_update(req.message))


# --- Memories ---

@app.get("/memories", dependencies=[Depends(verify_token)])
async def list_memories_endpoint(
    folder: Optional[str] = None,
    status_filter: Optional[MemoryStatus] = Query(default=None, alias="status"),
):
    store = _engine().store
    memories = store.get_memories_in_folder(folder) if folder else store.get_memories()
    if status_filter is not None:
        memories = [m for m in memories if m.status == status_filter]
    return _ok(_dump(memories))


@app.post("/memories", dependencies=[Depends(verify_token)])
async def add_memory_endpoint(req: AddMemoryRequest):
    memory = _engine().store.add_memory(req.content, **req.model_dump(exclude={"content"}))
    return _ok(memory.model_dump(mode="json"))


@app.get("/memories/{memory_id}", dependencies=[Depends(verify_token)])
async def get_memory_endpoint(memory_id: str):
    memory = _engine().store.get_memory(memory_id)
    if memory is None:
        raise RecordNotFoundError(MEMORIES, memory_id)
    return _ok(memory.model_dump(mode="json"))


@app.patch("/memories/{memory_id}", dependencies=[Depends(verify_token)])
async def update_memory_endpoint(memory_id: str, req: UpdateMemoryRequest):
    try:
        memory = _engine().store.update_memory(memory_id, req.updates, force=req.force)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _ok(memory.model_dump(mode="json"))


@app.post("/memories/{memory_id}/approve", dependencies=[Depends(verify_token)])
async def approve_memory_endpoint(memory_id: str):
    return _ok(_engine().store.approve_memory(memory_id).model_dump(mode="json"))


@app.post("/memories/{memory_id}/pin", dependencies=[Depends(verify_token)])
async def pin_memory_endpoint(memory_id: str, req: ToggleRequest):
    return _ok(_engine().store.set_memory_pinned(memory_id, req.value).model_dump(mode="json"))


@app.post("/memories/{memory_id}/lock", dependencies=[Depends(verify_token)])
async def lock_memory_endpoint(memory_id: str, req: ToggleRequest):
    return _ok(_engine().store.set_memory_locked(memory_id, req.value).model_dump(mode="json"))


@app.delete("/memories/{memory_id}", dependencies=[Depends(verify_token)])
async def delete_memory_endpoint(memory_id: str):
    return _require_deleted(_engine().store.delete_memory(memory_id), MEMORIES, memory_id)


# --- People ---

@app.get("/people", dependencies=[Depends(verify_token)])
async def list_people_endpoint():
    return _ok(_dump(_engine().store.get_people()))


@app.post("/people", dependencies=[Depends(verify_token)])
async def update_person_endpoint(req: PersonFactRequest):
    person = _engine().store.update_person(req.name, req.fact, req.relation)
    return _ok(person.model_dump(mode="json"))


@app.post("/people/merge", dependencies=[Depends(verify_token)])
async def merge_people_endpoint(req: MergePeopleRequest):
    return _ok(_engine().store.merge_people(req.source_id, req.target_id).model_dump(mode="json"))


@app.post("/people/{person_id}/split", dependencies=[Depends(verify_token)])
async def split_person_endpoint(person_id: str, req: SplitPersonRequest):
    person = _engine().store.split_identity(person_id, req.name, req.fact, req.reason)
    return _ok(person.model_dump(mode="json"))


@app.post("/people/{person_id}/facts", dependencies=[Depends(verify_token)])
async def add_fact_endpoint(person_id: str, req: FactRequest):
    return _ok(_engine().store.add_fact_to_person(person_id, req.fact).model_dump(mode="json"))


@app.delete("/people/{person_id}/facts/{fact_id}", dependencies=[Depends(verify_token)])
async def remove_fact_endpoint(person_id: str, fact_id: str):
    return _ok(_engine().store.remove_fact_from_person(person_id, fact_id).model_dump(mode="json"))


@app.post("/people/{person_id}/consent", dependencies=[Depends(verify_token)])
async def consent_endpoint(person_id: str, req: ToggleRequest):
    return _ok(_engine().store.set_person_consent(person_id, req.value).model_dump(mode="json"))


@app.delete("/people/{person_id}", dependencies=[Depends(verify_token)])
async def delete_person_endpoint(person_id: str):
    return _require_deleted(_engine().store.delete_person(person_id), PEOPLE, person_id)


# --- Reminders & Places ---

@app.get("/reminders", dependencies=[Depends(verify_token)])
async def list_reminders_endpoint():
    return _ok(_dump(_engine().store.get_reminders()))


@app.post("/reminders", dependencies=[Depends(verify_token)])
async def upsert_reminder_endpoint(req: ReminderRequest):
    return _ok(_engine().store.upsert_reminder(req.task, req.due_time).model_dump(mode="json"))


@app.post("/reminders/{reminder_id}/complete", dependencies=[Depends(verify_token)])
async def complete_reminder_endpoint(reminder_id: str):
    return _ok(_engine().store.complete_reminder(reminder_id).model_dump(mode="json"))


@app.delete("/reminders/{reminder_id}", dependencies=[Depends(verify_token)])
async def delete_reminder_endpoint(reminder_id: str):
    return _require_deleted(_engine().store.delete_reminder(reminder_id), REMINDERS, reminder_id)


@app.get("/places", dependencies=[Depends(verify_token)])
async def list_places_endpoint():
    return _ok(_dump(_engine().store.get_places()))


@app.post("/places", dependencies=[Depends(verify_token)])
async def add_place_endpoint(req: PlaceRequest):
    return _ok(_engine().store.add_place(req.name, req.category, req.notes).model_dump(mode="json"))


@app.post("/places/{place_id}/status", dependencies=[Depends(verify_token)])
async def place_status_endpoint(place_id: str, req: PlaceStatusRequest):
    return _ok(_engine().store.set_place_status(place_id, req.status).model_dump(mode="json"))


@app.delete("/places/{place_id}", dependencies=[Depends(verify_token)])
async def delete_place_endpoint(place_id: str):
    return _require_deleted(_engine().store.delete_place(place_id), PLACES, place_id)


# --- Audit & Settings ---

@app.get("/decision-logs", dependencies=[Depends(verify_token)])
async def decision_logs_endpoint(limit: int = 50):
    return _ok(_dump(_engine().store.get_decision_logs()[:max(0, limit)]))


@app.get("/settings", dependencies=[Depends(verify_token)])
async def get_settings_endpoint():
    return _ok(_engine().store.get_settings().model_dump(mode="json"))


@app.patch("/settings", dependencies=[Depends(verify_token)])
async def update_settings_endpoint(req: SettingsRequest):
    try:
        settings = _engine().store.update_settings(**req.changes)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _ok(settings.model_dump(mode="json"))


# --- Main ---

def _configure_file_logging() -> Path:
    log_dir = get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "cliper_server.log"
    handler = logging.FileHandler(log_path, mode="a")
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    logging.getLogger().addHandler(handler)
    return log_path


def main():
    config = CliperConfig.from_env()

    parser = argparse.ArgumentParser(description="Cliper Memory Server")
    parser.add_argument("--host", default=config.server.host, help="Host to bind to")
    parser.add_argument("--port", type=int, default=config.server.port, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable hot reload")
    args = parser.parse_args()

    log_path = _configure_file_logging()
    logger.info("Starting Cliper Memory Server on %s:%d", args.host, args.port)

    try:
        uvicorn.run(
            "server:app",
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level=config.server.log_level,
        )
    except OSError as e:
        if e.errno in (98, 10048):
            logger.error("Failed to start server on port %d. Port is likely in use.", args.port)
            print(f"\n[ERROR] Port {args.port} is already in use.")
            print(f"Please check the server log at: {log_path}")
            sys.exit(1)
        raise


if __name__ == "__main__":
    main()
