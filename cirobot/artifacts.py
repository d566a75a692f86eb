"""
CI Robot Artifact Store - run-scoped storage for logs, reports and run metadata.

Layout:
    <base_dir>/runs/<run_id>/metadata.json   {runId, createdAt, status, updatedAt?}
    <base_dir>/runs/<run_id>/...             artifacts written during the run
"""
import json
import os
import shutil
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from cirobot.log import get_logger
from cirobot.models import ArtifactInfo, generate_run_id, utc_now_iso

logger = get_logger(__name__)

METADATA_FILE = "metadata.json"
RUN_STATUSES = ("in_progress", "completed", "failed")

CONTENT_TYPES = {
    ".json": "application/json",
    ".log": "text/plain",
    ".txt": "text/plain",
    ".html": "text/html",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}


def content_type_for(filename: str) -> str:
    return CONTENT_TYPES.get(os.path.splitext(filename)[1].lower(), "application/octet-stream")


class RunArtifacts:
    """Handle for writing and reading the artifacts of one run"""

    def __init__(self, run_dir: str, run_id: str):
        self.run_dir = run_dir
        self.run_id = run_id

    def get_path(self, filename: str) -> str:
        return os.path.join(self.run_dir, filename)

    def _prepare(self, filename: str) -> str:
        path = self.get_path(filename)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        return path

    def write(self, filename: str, content: str) -> str:
        path = self._prepare(filename)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        return path

    def write_json(self, filename: str, data: Any) -> str:
        if not filename.endswith(".json"):
            filename += ".json"
        return self.write(filename, json.dumps(data, indent=2, default=str))

    def write_binary(self, filename: str, data: bytes) -> str:
        path = self._prepare(filename)
        with open(path, "wb") as f:
            f.write(data)
        return path

    def copy_file(self, source_path: str, dest_filename: Optional[str] = None) -> str:
        path = self._prepare(dest_filename or os.path.basename(source_path))
        shutil.copyfile(source_path, path)
        return path

    def copy_dir(self, source_dir: str, dest_dirname: Optional[str] = None) -> str:
        """Recursive copy; merges into an existing destination."""
        dest = self.get_path(dest_dirname or os.path.basename(os.path.normpath(source_dir)))
        shutil.copytree(source_dir, dest, dirs_exist_ok=True)
        return dest

    def exists(self, filename: str) -> bool:
        return os.path.exists(self.get_path(filename))

    def read(self, filename: str) -> str:
        with open(self.get_path(filename), encoding="utf-8") as f:
            return f.read()

    def read_json(self, filename: str) -> Any:
        return json.loads(self.read(filename))

    def list_artifacts(self) -> List[ArtifactInfo]:
        """Scan the run directory. The run's own metadata.json is not an artifact."""
        artifacts: List[ArtifactInfo] = []
        if not os.path.isdir(self.run_dir):
            return artifacts

        for root, dirs, files in os.walk(self.run_dir):
            dirs.sort()
            for name in sorted(files):
                full = os.path.join(root, name)
                rel = os.path.relpath(full, self.run_dir).replace(os.sep, "/")
                if rel == METADATA_FILE:
                    continue
                try:
                    size = os.path.getsize(full)
                except OSError:
                    continue
                artifacts.append(ArtifactInfo(name=name, path=rel, size=size, type=content_type_for(name)))
        return artifacts


class ArtifactStore:
    """All runs under one base directory"""

    def __init__(self, base_dir: str):
        self.base_dir = base_dir

    @property
    def runs_dir(self) -> str:
        return os.path.join(self.base_dir, "runs")

    def _run_dir(self, run_id: str) -> str:
        return os.path.join(self.runs_dir, run_id)

    def create_run(self, run_id: Optional[str] = None) -> RunArtifacts:
        if run_id:
            run_dir = self._run_dir(run_id)
            os.makedirs(run_dir, exist_ok=True)
        else:
            # generated ids must name a fresh directory
            os.makedirs(self.runs_dir, exist_ok=True)
            while True:
                run_id = generate_run_id()
                run_dir = self._run_dir(run_id)
                try:
                    os.mkdir(run_dir)
                    break
                except FileExistsError:
                    continue
        self._write_metadata(run_id, {"runId": run_id, "createdAt": utc_now_iso(), "status": "in_progress"})
        logger.debug("[ARTIFACTS] Created run %s", run_id)
        return RunArtifacts(run_dir, run_id)

    def get_run(self, run_id: str) -> RunArtifacts:
        return RunArtifacts(self._run_dir(run_id), run_id)

    def has_run(self, run_id: str) -> bool:
        return os.path.isdir(self._run_dir(run_id))

    def get_metadata(self, run_id: str) -> Optional[Dict[str, Any]]:
        try:
            with open(os.path.join(self._run_dir(run_id), METADATA_FILE)) as f:
                return json.load(f)
        except (OSError, ValueError):
            return None

    def list_runs(self) -> List[Dict[str, str]]:
        """[{runId, createdAt, status}] newest first; unreadable metadata shows as 'unknown'."""
        runs = []
        try:
            names = os.listdir(self.runs_dir)
        except OSError:
            return runs

        for name in names:
            if not os.path.isdir(self._run_dir(name)):
                continue
            metadata = self.get_metadata(name)
            if metadata is None:
                runs.append({"runId": name, "createdAt": "unknown", "status": "unknown"})
            else:
                runs.append({
                    "runId": name,
                    "createdAt": metadata.get("createdAt", "unknown"),
                    "status": metadata.get("status", "unknown"),
                })

        runs.sort(key=lambda r: r["createdAt"], reverse=True)
        return runs

    def update_run_status(self, run_id: str, status: str) -> None:
        """Set status and updatedAt; writes fresh metadata if none exists."""
        if status not in RUN_STATUSES:
            raise ValueError(f"Invalid run status: {status}")
        now = utc_now_iso()
        metadata = self.get_metadata(run_id)
        if metadata is None:
            metadata = {"runId": run_id, "createdAt": now}
        metadata["status"] = status
        metadata["updatedAt"] = now
        self._write_metadata(run_id, metadata)

    def delete_run(self, run_id: str) -> None:
        shutil.rmtree(self._run_dir(run_id), ignore_errors=True)

    def cleanup(self, older_than_days: float) -> int:
        """Delete runs created before now - older_than_days. Runs with unknown dates are kept."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
        deleted = 0
        for run in self.list_runs():
            created = _parse_timestamp(run["createdAt"])
            if created is not None and created < cutoff:
                self.delete_run(run["runId"])
                deleted += 1
        if deleted:
            logger.info("[ARTIFACTS] Cleaned up %d runs older than %s days", deleted, older_than_days)
        return deleted

    def get_total_size(self) -> int:
        return sum(
            a.size or 0
            for run in self.list_runs()
            for a in self.get_run(run["runId"]).list_artifacts()
        )

    def _write_metadata(self, run_id: str, metadata: Dict[str, Any]) -> None:
        run_dir = self._run_dir(run_id)
        os.makedirs(run_dir, exist_ok=True)
        with open(os.path.join(run_dir, METADATA_FILE), "w") as f:
            json.dump(metadata, f, indent=2)


def _parse_timestamp(value: str) -> Optional[datetime]:
    if not value or value == "unknown":
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def create_artifact_store(project_dir: str) -> ArtifactStore:
    return ArtifactStore(os.path.join(project_dir, ".mcp-artifacts"))
