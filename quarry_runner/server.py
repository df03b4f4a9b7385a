import json
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .compiler import compile_and_run
from .config import settings
from .errors import BackendUnavailableError, UnsupportedLanguageError, WorkerUnavailableError
from .models import ExecutionResult, Language, ModuleDescriptor, RunOutcome
from .orchestrator import ExecutionOrchestrator
from .remote_backend import RemoteCompileBackend
from .worker_bridge import get_bridge, shutdown_bridge

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Dashboard WebSocket connections
dashboard_connections: list[WebSocket] = []

_remote: Optional[RemoteCompileBackend] = None


async def broadcast_to_dashboard(event: dict):
    """Broadcast a worker event to all connected dashboard clients."""
    if not dashboard_connections:
        return

    message = json.dumps({"type": "worker_event", **event})
    disconnected = []

    for ws in dashboard_connections:
        try:
            await ws.send_text(message)
        except Exception:
            disconnected.append(ws)

    for ws in disconnected:
        if ws in dashboard_connections:
            dashboard_connections.remove(ws)


async def get_remote() -> RemoteCompileBackend:
    global _remote

    if _remote is None:
        _remote = RemoteCompileBackend()
        await _remote.start()

    return _remote


async def get_orchestrator() -> ExecutionOrchestrator:
    return ExecutionOrchestrator(await get_bridge(), await get_remote())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - start the worker on startup, tear it down on shutdown."""
    global _remote
    logger.info("Starting up QuarryRunner service...")

    try:
        bridge = await get_bridge()
        bridge.add_event_callback(broadcast_to_dashboard)
        logger.info(f"Worker bridge initialized ({bridge.status()['isolation']} isolation)")
    except Exception as e:
        logger.error(f"Failed to initialize worker bridge: {e}")
        raise

    await get_remote()

    yield

    logger.info("Shutting down QuarryRunner service...")
    if _remote is not None:
        await _remote.close()
        _remote = None
    await shutdown_bridge()


app = FastAPI(
    title="QuarryRunner",
    description="Sandboxed code execution and practice verdicts",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class RunRequest(BaseModel):
    module: ModuleDescriptor
    code: str


class ExecuteRequest(BaseModel):
    code: Optional[str] = None
    timeout: Optional[int] = None
    stdin: str = ""
    expected_output: Optional[str] = Field(default=None, alias="expectedOutput")

    model_config = ConfigDict(populate_by_name=True)


class CompileRequest(BaseModel):
    code: Optional[str] = None
    language: str = Language.C.value
    stdin: str = ""
    timeout: Optional[int] = None


class LegacyCompileRequest(BaseModel):
    code: Optional[str] = None


@app.websocket("/ws/dashboard")
async def websocket_dashboard(websocket: WebSocket):
    """WebSocket endpoint for live worker events."""
    await websocket.accept()
    dashboard_connections.append(websocket)
    logger.info(f"Dashboard client connected. Total: {len(dashboard_connections)}")

    try:
        bridge = await get_bridge()
        await websocket.send_text(json.dumps({"type": "status", **bridge.status()}))
        await websocket.send_text(json.dumps({"type": "stats", **bridge.get_stats()}))

        while True:
            try:
                await asyncio.wait_for(websocket.receive_text(), timeout=30)
            except asyncio.TimeoutError:
                await websocket.send_text(json.dumps({"type": "status", **bridge.status()}))

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.warning(f"Dashboard WebSocket error: {e}")
    finally:
        if websocket in dashboard_connections:
            dashboard_connections.remove(websocket)
        logger.info(f"Dashboard client disconnected. Total: {len(dashboard_connections)}")


@app.get("/health")
async def health():
    """Health check endpoint with worker status."""
    bridge = await get_bridge()
    status = bridge.status()
    if status["fault"]:
        return JSONResponse(status_code=503, content={"status": "unhealthy", "worker": status})
    return {"status": "healthy", "worker": status}


@app.post("/run", response_model=RunOutcome, response_model_by_alias=True)
async def run_module(request_data: RunRequest):
    """
    Evaluate a submission against a practice module.

    1. Static pre-filter (required snippets, entry point, forbidden constructs)
    2. Dispatch to the sandbox worker or the compile service
    3. Verdict against the module's tests
    """
    if not request_data.code:
        raise HTTPException(status_code=400, detail="No code provided")

    try:
        orchestrator = await get_orchestrator()
        return await orchestrator.run(request_data.module, request_data.code)
    except UnsupportedLanguageError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except WorkerUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except BackendUnavailableError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except Exception as e:
        logger.error(f"Error running module {request_data.module.id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/execute", response_model=ExecutionResult, response_model_by_alias=True)
async def execute(request_data: ExecuteRequest):
    """Run Python code in the sandbox worker without a module verdict."""
    if not request_data.code:
        raise HTTPException(status_code=400, detail="No code provided")

    try:
        bridge = await get_bridge()
        return await bridge.execute(
            request_data.code,
            timeout_ms=request_data.timeout,
            expected_output=request_data.expected_output,
            stdin=request_data.stdin,
        )
    except WorkerUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"Error executing code: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/v1/compile", response_model=ExecutionResult, response_model_by_alias=True)
async def compile_code(request_data: CompileRequest):
    """Compile and run C or JavaScript code."""
    if not request_data.code:
        raise HTTPException(status_code=400, detail="No code provided")

    try:
        language = Language(request_data.language.lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unsupported language: {request_data.language}")

    try:
        return await compile_and_run(
            request_data.code,
            language,
            stdin=request_data.stdin,
            timeout_ms=request_data.timeout,
        )
    except UnsupportedLanguageError:
        raise HTTPException(status_code=400, detail=f"Unsupported language: {request_data.language}")
    except BackendUnavailableError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except Exception as e:
        logger.error(f"Error compiling code: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/v1/compile-c")
async def compile_c(request_data: LegacyCompileRequest):
    """Compile and run C code. Returns {"output": ...} or 500 {"error": ...}."""
    if not request_data.code:
        return JSONResponse(status_code=400, content={"error": "No code provided"})

    logger.info("Compiling C code...")
    try:
        result = await compile_and_run(request_data.code, Language.C)
    except BackendUnavailableError as e:
        logger.error(f"Compilation error: {e}")
        return JSONResponse(status_code=500, content={"error": str(e)})

    if not result.success:
        logger.info(f"Compilation failed: {result.error}")
        return JSONResponse(status_code=500, content={"error": result.error})

    logger.info("Compilation successful")
    return {"output": "\n".join(entry.message for entry in result.logs if entry.type in ("log", "error"))}


@app.post("/compile-c")
async def compile_c_deprecated(request_data: LegacyCompileRequest):
    logger.warning("[DEPRECATED] Using /compile-c. Please use /v1/compile-c instead.")
    return await compile_c(request_data)


@app.post("/worker/restart")
async def restart_worker():
    """Manual retry affordance for a faulted worker."""
    bridge = await get_bridge()
    ready = await bridge.restart()
    if not ready:
        raise HTTPException(status_code=503, detail=bridge.fault or "Worker did not become ready")
    return {"status": "restarted", "worker": bridge.status()}


@app.get("/dashboard/stats")
async def dashboard_stats():
    """Get execution statistics for the dashboard."""
    bridge = await get_bridge()
    return bridge.get_stats()


@app.get("/dashboard/history")
async def dashboard_history(limit: int = 50):
    """Get recent execution history."""
    bridge = await get_bridge()
    return bridge.get_execution_history(limit)


@app.get("/dashboard/events")
async def dashboard_events(limit: int = 100):
    """Get the most recent worker security events."""
    bridge = await get_bridge()
    return bridge.get_security_events(limit)
