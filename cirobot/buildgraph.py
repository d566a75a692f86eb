"""
CI Robot BuildGraph Executor - run BuildGraph scripts through UAT and parse node results.
"""
import json
import os
import re
import time
from typing import Any, Dict, List, Optional

from cirobot.log import get_logger
from cirobot.models import ArtifactInfo, BuildGraphResult, BuildGraphValidation, NodeResult, ProcessResult
from cirobot.uat import UATRunner

logger = get_logger(__name__)

DEFAULT_BUILD_TIMEOUT_MS = 3600000
VALIDATE_TIMEOUT_MS = 60000

_NODE_START = re.compile(r"Running (?:node |)['\"]?(\w+)['\"]?", re.IGNORECASE)
_NODE_DONE = re.compile(r"(?:Completed|Finished) (?:node |)['\"]?(\w+)['\"]?", re.IGNORECASE)
_NODE_FAIL = re.compile(r"(?:Failed|Error in) (?:node |)['\"]?(\w+)['\"]?", re.IGNORECASE)
_LIST_NODE = re.compile(r"^\s*(?:Node:|-)?\s*['\"]?(\w+)['\"]?\s*$")
_GRAPH_NODE = re.compile(r"Node\s+['\"]?(\w+)['\"]?")
_OUTPUT_PATH = re.compile(r"(?:Output|Created|Built):\s*[\"']?([^\s\"'\n]+)", re.IGNORECASE)


class BuildGraphExecutor:
    """Executes BuildGraph targets"""

    def __init__(self, engine_path: str, project_path: str, uat: Optional[UATRunner] = None):
        self.project_path = project_path
        self.uat = uat or UATRunner(engine_path, project_path)

    async def execute(self, script_path: str, targets: List[str],
                      options: Optional[Dict[str, Any]] = None) -> BuildGraphResult:
        """
        Execute BuildGraph targets.

        Args:
            script_path: Path to BuildGraph XML script
            targets: Node/target names, joined with '+'
            options: platform, configuration, shared_ddc, no_p4, distributed_build,
                     additional_args, timeout (ms)

        Returns:
            BuildGraphResult with parsed node results
        """
        options = options or {}
        start = time.monotonic()
        args = self.build_args(script_path, targets, options)

        logger.info("[BUILDGRAPH] Executing: %s", "+".join(targets))
        logger.info("[BUILDGRAPH] Script: %s", script_path)
        logger.info("[BUILDGRAPH] Options: %s", json.dumps(options, default=str))

        result = await self.uat.run(
            "BuildGraph", args,
            timeout=options.get("timeout") or DEFAULT_BUILD_TIMEOUT_MS,
        )

        return BuildGraphResult(
            success=result.exit_code == 0,
            exit_code=result.exit_code,
            nodes=parse_node_results(result.stdout),
            artifacts=collect_artifacts(result),
            duration=int((time.monotonic() - start) * 1000),
            stdout=result.stdout,
            stderr=result.stderr,
        )

    async def validate(self, script_path: str, targets: List[str]) -> BuildGraphValidation:
        """Validate a script with -ListOnly (no execution)."""
        args = [f"-Script={script_path}", f"-Target={'+'.join(targets)}", "-ListOnly"]
        logger.info("[BUILDGRAPH] Validating script: %s", script_path)
        result = await self.uat.run("BuildGraph", args, timeout=VALIDATE_TIMEOUT_MS)
        return BuildGraphValidation(
            valid=result.exit_code == 0,
            available_nodes=parse_available_nodes(result.stdout),
            errors=parse_errors(result.stderr),
        )

    async def generate_schema(self, output_path: str) -> ProcessResult:
        logger.info("[BUILDGRAPH] Generating schema to: %s", output_path)
        return await self.uat.run("BuildGraph", [f"-Schema={output_path}"])

    def build_args(self, script_path: str, targets: List[str], options: Dict[str, Any]) -> List[str]:
        args = [
            f"-Script={script_path}",
            f"-Target={'+'.join(targets)}",
            f"-Set:ProjectPath={self.project_path}",
            f"-Set:Platform={options.get('platform') or 'Win64'}",
        ]
        if options.get("configuration"):
            args.append(f"-Set:Configuration={options['configuration']}")
        if options.get("shared_ddc"):
            args.append(f"-Set:SharedStorageDir={options['shared_ddc']}")
        args.append("-NoP4" if options.get("no_p4") else "-P4")
        if options.get("distributed_build"):
            args.append("-DistributedBuild")
        args.extend(options.get("additional_args") or [])
        return args


def parse_node_results(stdout: str) -> List[NodeResult]:
    """Best-effort node parsing. A node still open at the end counts as succeeded."""
    nodes: List[NodeResult] = []
    current: Optional[NodeResult] = None

    for line in stdout.split("\n"):
        match = _NODE_START.search(line)
        if match:
            if current:
                nodes.append(current)
            current = NodeResult(name=match.group(1), success=True)
            continue

        match = _NODE_DONE.search(line)
        if match and current:
            nodes.append(current)
            current = None
            continue

        match = _NODE_FAIL.search(line)
        if match and current:
            current.success = False
            nodes.append(current)
            current = None
            continue

        if current:
            current.output += line + "\n"

    if current:
        nodes.append(current)
    return nodes


def parse_available_nodes(stdout: str) -> List[str]:
    nodes: List[str] = []
    for line in stdout.split("\n"):
        match = _LIST_NODE.match(line)
        if match:
            nodes.append(match.group(1))
        match = _GRAPH_NODE.search(line)
        if match and match.group(1) not in nodes:
            nodes.append(match.group(1))
    return nodes


def parse_errors(stderr: str) -> List[str]:
    keywords = ("error", "failed", "exception")
    return [line.strip() for line in stderr.split("\n") if any(k in line.lower() for k in keywords)]


def collect_artifacts(result: ProcessResult) -> List[ArtifactInfo]:
    artifacts: List[ArtifactInfo] = []
    if result.log_path:
        artifacts.append(ArtifactInfo(name="build_log", path=result.log_path, type="text/plain"))
    for match in _OUTPUT_PATH.finditer(result.stdout):
        path = match.group(1)
        if os.path.exists(path):
            artifacts.append(ArtifactInfo(name=os.path.basename(path), path=path, size=os.path.getsize(path)))
    return artifacts


SAMPLE_BUILDGRAPH_SCRIPT = """<?xml version='1.0' ?>
<BuildGraph xmlns="http://www.epicgames.com/BuildGraph">
    <Option Name="ProjectPath" DefaultValue="" Description="Path to .uproject file"/>
    <Option Name="Platform" DefaultValue="Win64" Description="Target platform"/>
    <Option Name="Configuration" DefaultValue="Development" Description="Build configuration"/>
    <Option Name="SharedStorageDir" DefaultValue="" Description="Shared DDC path"/>

    <Agent Name="CompileAgent" Type="$(Platform)">
        <Node Name="CompileEditor" Produces="#EditorBinaries">
            <Compile Target="UnrealEditor" Platform="$(Platform)" Configuration="$(Configuration)"
                     Arguments="-Project=$(ProjectPath)"/>
        </Node>
        <Node Name="CompileGame" Produces="#GameBinaries">
            <Compile Target="$(ProjectName)" Platform="$(Platform)" Configuration="$(Configuration)"
                     Arguments="-Project=$(ProjectPath)"/>
        </Node>
    </Agent>

    <Agent Name="CookAgent" Type="$(Platform)">
        <Node Name="CookContent" Requires="#EditorBinaries" Produces="#CookedContent">
            <Cook Project="$(ProjectPath)" Platform="$(Platform)"/>
        </Node>
        <Node Name="CompileAllBlueprints" Requires="#EditorBinaries">
            <Command Name="CompileAllBlueprints" Arguments="-Project=$(ProjectPath)"/>
        </Node>
    </Agent>

    <Agent Name="TestAgent" Type="$(Platform)">
        <Node Name="RunAutomationTests" Requires="#EditorBinaries">
            <Command Name="RunAutomationTests" Arguments="-Project=$(ProjectPath) -Filter=Project."/>
        </Node>
    </Agent>
</BuildGraph>
"""


def write_sample_script(output_path: str) -> str:
    """Write the sample CI BuildGraph script (CompileEditor, CompileGame, Cook, Test nodes)."""
    os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
    with open(output_path, "w") as f:
        f.write(SAMPLE_BUILDGRAPH_SCRIPT)
    return output_path
