"""
CI Robot DDC Manager - derived data cache configuration, health and warm-up.

Modes:
    local             no network dependencies
    shared-fileshare  SMB/NFS share (shared_storage_path)
    zen               Zen server (zen_server_url) - unauthenticated, LAN/VPN only
    cloud-ddc         authenticated cloud endpoint (cloud_ddc_endpoint)
"""
import asyncio
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from cirobot.log import get_logger
from cirobot.process import ProcessExecutor
from cirobot.uat import editor_cmd_path, resolve_engine_path

logger = get_logger(__name__)

DDC_MODES = ("local", "shared-fileshare", "zen", "cloud-ddc")
WARM_TIMEOUT_MS = 600000
ZEN_PROBE_TIMEOUT = 5  # seconds
CLOUD_PROBE_TIMEOUT = 10

NETWORK_WARNINGS = {
    "zen": "Zen server is unauthenticated - LAN/VPN only, not safe on public networks",
    "shared-fileshare": "Shared fileshare requires network access to storage path",
    "cloud-ddc": "Cloud DDC is authenticated and internet-safe",
    "local": "Local DDC only - no network dependencies",
}


class DDCConfigError(ValueError):
    """Invalid DDC configuration"""


@dataclass
class DDCConfig:
    mode: str = "local"
    shared_storage_path: Optional[str] = None
    zen_server_url: Optional[str] = None
    cloud_ddc_endpoint: Optional[str] = None


class DDCManager:
    """Validates the DDC config at construction and serves editor args / probes"""

    def __init__(self, config: DDCConfig, project_path: str = "", engine_path: str = "",
                 executor: Optional[ProcessExecutor] = None):
        self.config = config
        self.project_path = project_path
        self.engine_path = engine_path
        self.executor = executor or ProcessExecutor()
        self._validate()

    def _validate(self) -> None:
        mode = self.config.mode
        if mode not in DDC_MODES:
            raise DDCConfigError(f"Unknown DDC mode: {mode}")
        if mode == "shared-fileshare" and not self.config.shared_storage_path:
            raise DDCConfigError("DDC mode shared-fileshare requires sharedStoragePath")
        if mode == "zen" and not self.config.zen_server_url:
            raise DDCConfigError("DDC mode zen requires zenServerUrl")
        if mode == "cloud-ddc" and not self.config.cloud_ddc_endpoint:
            raise DDCConfigError("DDC mode cloud-ddc requires cloudDDCEndpoint")

        if mode == "zen":
            logger.warning("[DDC] WARNING: Zen server is UNAUTHENTICATED.")
            logger.warning("[DDC] WARNING: Use on trusted LAN/VPN only!")
            logger.warning("[DDC] WARNING: For internet-facing setups, use cloud-ddc instead.")

    @property
    def mode(self) -> str:
        return self.config.mode

    def get_network_warning(self) -> str:
        return NETWORK_WARNINGS.get(self.config.mode, NETWORK_WARNINGS["local"])

    def get_editor_args(self) -> List[str]:
        mode = self.config.mode
        if mode == "zen":
            return [f"-ZenStoreURL={self.config.zen_server_url}"]
        if mode == "shared-fileshare":
            return [f"-SharedStorageDir={self.config.shared_storage_path}"]
        if mode == "cloud-ddc":
            return [f"-CloudDDC={self.config.cloud_ddc_endpoint}"]
        return []

    def get_config_info(self) -> Dict[str, Any]:
        info = {"mode": self.config.mode, "warning": self.get_network_warning()}
        endpoint = self.config.zen_server_url or self.config.shared_storage_path or self.config.cloud_ddc_endpoint
        if endpoint:
            info["endpoint"] = endpoint
        return info

    async def warm_cache(self, maps: List[str]) -> Dict[str, Any]:
        """Run the DerivedDataCache commandlet over the given maps."""
        args = [
            self.project_path,
            "-run=DerivedDataCache",
            "-fill",
            f"-Map={'+'.join(maps)}",
            *self.get_editor_args(),
            "-unattended",
            "-nosplash",
        ]
        editor = editor_cmd_path(resolve_engine_path(self.engine_path))
        logger.info("[DDC] Warming cache for %d maps", len(maps))
        result = await self.executor.run(editor, args, timeout=WARM_TIMEOUT_MS)
        if not result.success:
            logger.error("[DDC] Cache warm failed (exit=%d)", result.exit_code)
        return {"success": result.success, "duration": result.duration}

    async def check_connection(self) -> Dict[str, Any]:
        """{available, latencyMs?, error?}; never raises."""
        mode = self.config.mode
        if mode == "zen":
            return await asyncio.to_thread(
                self._probe_http, self.config.zen_server_url, ZEN_PROBE_TIMEOUT,
                "Zen URL not configured", "Zen server unreachable")
        if mode == "cloud-ddc":
            return await asyncio.to_thread(
                self._probe_http, self.config.cloud_ddc_endpoint, CLOUD_PROBE_TIMEOUT,
                "Cloud DDC endpoint not configured", "Cloud DDC unreachable")
        if mode == "shared-fileshare":
            return self._probe_fileshare()
        return {"available": True}

    def _probe_http(self, base_url: Optional[str], timeout: float, missing: str, unreachable: str) -> Dict[str, Any]:
        if not base_url:
            return {"available": False, "error": missing}
        start = time.monotonic()
        try:
            response = requests.get(f"{base_url.rstrip('/')}/health", timeout=timeout)
        except requests.RequestException as e:
            return {"available": False, "error": f"{unreachable}: {e}"}
        return {"available": response.ok, "latencyMs": int((time.monotonic() - start) * 1000)}

    def _probe_fileshare(self) -> Dict[str, Any]:
        path = self.config.shared_storage_path
        if not path:
            return {"available": False, "error": "Shared storage path not configured"}
        start = time.monotonic()
        if not os.path.exists(path):
            return {"available": False, "error": f"Shared storage not accessible: {path} does not exist"}
        if not os.access(path, os.R_OK):
            return {"available": False, "error": f"Shared storage not accessible: {path} is not readable"}
        return {"available": True, "latencyMs": int((time.monotonic() - start) * 1000)}


def create_local_ddc_manager(project_path: str = "", engine_path: str = "") -> DDCManager:
    return DDCManager(DDCConfig(mode="local"), project_path, engine_path)


def create_zen_ddc_manager(project_path: str, engine_path: str, zen_server_url: str) -> DDCManager:
    logger.warning("[DDC] Creating Zen DDC manager. Ensure you are on a trusted network!")
    return DDCManager(DDCConfig(mode="zen", zen_server_url=zen_server_url), project_path, engine_path)
