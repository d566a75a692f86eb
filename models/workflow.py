"""
Pydantic models for CI Robot workflow definitions.

A workflow is an ordered list of phases; each phase holds steps. A step is a
tagged union keyed by `type` (build, test, cook, package, deploy, custom) and
every variant carries its own typed params model.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from dataclasses import dataclass, field
from pydantic import BaseModel, ConfigDict, Field, field_validator


STEP_TYPES = ("build", "test", "cook", "package", "deploy", "custom")

# Actions the daemon dispatches for each step type. cook/package accept any action.
KNOWN_ACTIONS: Dict[str, List[str]] = {
    "build": ["compile", "compile_editor", "compile_game", "buildgraph"],
    "test": ["automation", "run_automation", "visual_regression", "compare_visuals",
             "golden_scenario", "gauntlet"],
    "deploy": ["deploy", "install"],
}


class _Params(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class BuildParams(_Params):
    """compile / compile_editor / compile_game / buildgraph"""
    platform: str = "Win64"
    configuration: Optional[str] = None
    script: Optional[str] = None
    targets: Optional[List[str]] = None
    options: Dict[str, Any] = Field(default_factory=dict)


class AssertionParams(_Params):
    type: Literal["no_errors", "fps_above", "no_stuck_state", "custom"]
    threshold: Optional[float] = None
    custom_check: Optional[str] = Field(None, alias="customCheck")


class InputParams(_Params):
    action_path: str = Field(..., alias="actionPath", min_length=1)
    value: Any = None
    duration: int = Field(default=0, ge=0)


class TestParams(_Params):
    """automation / visual_regression / golden_scenario / gauntlet"""
    __test__ = False

    # automation
    filter: str = "Project."
    requires_rendering: bool = Field(default=False, alias="requiresRendering")
    # visual regression and golden scenario
    map: str = "/Game/Maps/TestMap"
    test_suite: str = Field(default="FPS.Visual.Baseline", alias="testSuite")
    threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    thresholds: Dict[str, float] = Field(default_factory=dict)
    duration: int = Field(default=60000, ge=1)
    input_sequence: List[InputParams] = Field(default_factory=list, alias="inputSequence")
    assertions: Optional[List[AssertionParams]] = None
    # gauntlet
    test_name: Optional[str] = Field(None, alias="testName")
    test: Optional[str] = None
    tier: Optional[Literal["smoke", "full", "stress"]] = None
    platform: str = "Win64"
    configuration: str = "Development"
    max_retries: int = Field(default=0, ge=0, le=10, alias="maxRetries")

    @field_validator("thresholds")
    @classmethod
    def validate_thresholds(cls, v):
        """Per-image thresholds are fractions"""
        for name, value in v.items():
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"Threshold for '{name}' must be between 0 and 1")
        return v


class CookParams(_Params):
    platform: str = "Win64"
    configuration: Optional[str] = None
    iterate: bool = True


class PackageParams(_Params):
    platform: str = "Win64"
    configuration: Optional[str] = None
    archive_dir: Optional[str] = Field(None, alias="archiveDir")


class DeployParams(_Params):
    platform: str = "Win64"
    configuration: Optional[str] = None
    device: Optional[str] = None


class CustomParams(_Params):
    """Arguments for a policy-checked UAT command; paths are checked too"""
    args: List[str] = Field(default_factory=list)
    paths: List[str] = Field(default_factory=list)


class _Step(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    action: str = Field(..., min_length=1)
    timeout: Optional[int] = Field(None, ge=1)  # ms


class BuildStep(_Step):
    type: Literal["build"]
    params: BuildParams = Field(default_factory=BuildParams)


class TestStep(_Step):
    __test__ = False

    type: Literal["test"]
    params: TestParams = Field(default_factory=TestParams)


class CookStep(_Step):
    type: Literal["cook"]
    params: CookParams = Field(default_factory=CookParams)


class PackageStep(_Step):
    type: Literal["package"]
    params: PackageParams = Field(default_factory=PackageParams)


class DeployStep(_Step):
    type: Literal["deploy"]
    params: DeployParams = Field(default_factory=DeployParams)


class CustomStep(_Step):
    type: Literal["custom"]
    params: CustomParams = Field(default_factory=CustomParams)


Step = Annotated[
    Union[BuildStep, TestStep, CookStep, PackageStep, DeployStep, CustomStep],
    Field(discriminator="type"),
]


class PhaseSpec(BaseModel):
    """Ordered steps, run sequentially or all at once"""
    name: str = Field(..., min_length=1, max_length=100)
    steps: List[Step] = Field(default_factory=list)
    parallel: bool = False
    continue_on_error: bool = Field(default=False, alias="continueOnError")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class WorkflowSpec(BaseModel):
    """Complete workflow definition"""
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default="", max_length=1000)
    phases: List[PhaseSpec] = Field(..., min_length=1)
    rollback_on_failure: bool = Field(default=False, alias="rollbackOnFailure")
    timeout: Optional[int] = Field(None, ge=1)  # ms, whole workflow
    artifacts: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @field_validator("phases")
    @classmethod
    def validate_phase_name_uniqueness(cls, phases):
        """Phase names key the per-step log directories"""
        names = [phase.name for phase in phases]
        if len(names) != len(set(names)):
            duplicates = [name for name in names if names.count(name) > 1]
            raise ValueError(f"Duplicate phase names: {set(duplicates)}")
        return phases

    def step_count(self) -> int:
        return sum(len(phase.steps) for phase in self.phases)

    def iter_steps(self):
        """Yield (phase, index, step) in execution order"""
        for phase in self.phases:
            for index, step in enumerate(phase.steps):
                yield phase, index, step


@dataclass
class ValidationError:
    """Represents a validation error"""
    field: str
    message: str
    severity: str = "error"  # error, warning


@dataclass
class ValidationResult:
    """Result of workflow validation"""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    warnings: List[ValidationError] = field(default_factory=list)
    metadata: Dict = field(default_factory=dict)

    def add_error(self, field: str, message: str):
        self.errors.append(ValidationError(field, message, "error"))
        self.is_valid = False

    def add_warning(self, field: str, message: str):
        self.warnings.append(ValidationError(field, message, "warning"))

    def format_report(self) -> str:
        """Format validation result as human-readable report"""
        lines = []

        if self.is_valid:
            lines.append("[OK] Workflow validation passed")
        else:
            lines.append("[ERROR] Workflow validation failed")

        for key, value in self.metadata.items():
            lines.append(f"[INFO] {key}: {value}")

        if self.errors:
            lines.append("\n[ERRORS]")
            for error in self.errors:
                lines.append(f"  {error.field}: {error.message}")

        if self.warnings:
            lines.append("\n[WARNINGS]")
            for warning in self.warnings:
                lines.append(f"  {warning.field}: {warning.message}")

        return "\n".join(lines)
