"""
CI Robot Report Server - browse runs and their artifacts over HTTP.

Routes:
    GET /                                 HTML run index
    GET /health                           liveness
    GET /runs, /api/runs                  {"runs": [...]}
    GET /runs/{run_id}                    {"runId", "metadata", "artifacts"}
    GET /runs/{run_id}/artifacts/{path}   raw artifact bytes

Runs inside the daemon's event loop via uvicorn.Server.
"""
import asyncio
import html
import os
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse, HTMLResponse

from cirobot.artifacts import ArtifactStore, content_type_for
from cirobot.log import get_logger

logger = get_logger(__name__)

TITLE = "MCP CI Robot - Test Reports"


def _check_run_id(store: ArtifactStore, run_id: str) -> None:
    if run_id in (".", "..") or "/" in run_id or "\\" in run_id or not store.has_run(run_id):
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")


def render_index(runs) -> str:
    rows = []
    for run in runs:
        run_id = html.escape(str(run.get("runId", "")))
        status = html.escape(str(run.get("status", "unknown")))
        created = html.escape(str(run.get("createdAt", "")))
        rows.append(
            f'<a href="/runs/{run_id}"><div class="run">'
            f'<span class="run-id">{run_id}</span> '
            f'<span class="run-status {status}">{status}</span>'
            f'<div class="run-date">{created}</div></div></a>'
        )
    body = "\n".join(rows) if rows else '<p class="empty">No test runs yet.</p>'
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>{TITLE}</title>
    <style>
        body {{ font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; margin: 0; padding: 20px; background: #f5f5f5; }}
        .container {{ max-width: 1200px; margin: 0 auto; }}
        .runs {{ display: grid; gap: 10px; }}
        .run {{ background: white; padding: 15px; border-radius: 8px; box-shadow: 0 1px 3px rgba(0,0,0,0.1); }}
        .run-id {{ font-weight: bold; color: #0066cc; }}
        .run-date {{ color: #666; font-size: 14px; }}
        .run-status {{ padding: 2px 8px; border-radius: 4px; font-size: 12px; }}
        .run-status.completed {{ background: #d4edda; color: #155724; }}
        .run-status.failed {{ background: #f8d7da; color: #721c24; }}
        .run-status.in_progress {{ background: #fff3cd; color: #856404; }}
        a {{ text-decoration: none; color: inherit; }}
    </style>
</head>
<body>
<div class="container">
    <h1>{TITLE}</h1>
    <div class="runs">
{body}
    </div>
</div>
</body>
</html>
"""


def create_app(store: ArtifactStore) -> FastAPI:
    app = FastAPI(title=TITLE)

    @app.get("/", response_class=HTMLResponse)
    def index() -> str:
        return render_index(store.list_runs())

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"status": "ok", "runs": len(store.list_runs())}

    @app.get("/runs")
    @app.get("/api/runs")
    def list_runs() -> Dict[str, Any]:
        return {"runs": store.list_runs()}

    @app.get("/runs/{run_id}")
    @app.get("/api/runs/{run_id}")
    def get_run(run_id: str) -> Dict[str, Any]:
        _check_run_id(store, run_id)
        run = store.get_run(run_id)
        return {
            "runId": run_id,
            "metadata": store.get_metadata(run_id),
            "artifacts": [a.to_dict() for a in run.list_artifacts()],
        }

    @app.get("/runs/{run_id}/artifacts/{artifact_path:path}")
    @app.get("/api/runs/{run_id}/artifacts/{artifact_path:path}")
    def get_artifact(run_id: str, artifact_path: str) -> FileResponse:
        _check_run_id(store, run_id)
        run_dir = os.path.realpath(store.get_run(run_id).run_dir)
        full_path = os.path.realpath(os.path.join(run_dir, artifact_path))
        if os.path.commonpath([run_dir, full_path]) != run_dir or not os.path.isfile(full_path):
            raise HTTPException(status_code=404, detail=f"Artifact not found: {artifact_path}")
        return FileResponse(full_path, media_type=content_type_for(full_path))

    return app


class ReportServer:
    """uvicorn server for the report app, started and stopped with the daemon"""

    def __init__(self, store: ArtifactStore, host: str = "127.0.0.1", port: int = 8080):
        self.store = store
        self.host = host
        self.port = port
        self.app = create_app(store)
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            logger.info("[REPORT] Already running")
            return
        config = uvicorn.Config(self.app, host=self.host, port=self.port, log_level="warning")
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())
        logger.info("[REPORT] Listening on http://%s:%d", self.host, self.port)

    async def stop(self) -> None:
        if not self._server or not self._task:
            return
        self._server.should_exit = True
        await self._task
        self._server = None
        self._task = None
        logger.info("[REPORT] Stopped")
