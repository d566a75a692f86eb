"""
CI Robot Models Package

Provides:
- Pydantic models for workflow definitions (phases, typed steps)
- JSON Schema for workflow files
- ValidationEngine for multi-layer validation
- Data classes for validation results
"""

from .workflow import (
    STEP_TYPES,
    KNOWN_ACTIONS,
    BuildParams,
    TestParams,
    CookParams,
    PackageParams,
    DeployParams,
    CustomParams,
    AssertionParams,
    InputParams,
    BuildStep,
    TestStep,
    CookStep,
    PackageStep,
    DeployStep,
    CustomStep,
    Step,
    PhaseSpec,
    WorkflowSpec,
    ValidationResult,
    ValidationError,
)

from .schema import WORKFLOW_SCHEMA

from .validator import (
    ValidationEngine,
    validate_workflow_file,
)

__all__ = [
    "STEP_TYPES",
    "KNOWN_ACTIONS",
    "BuildParams",
    "TestParams",
    "CookParams",
    "PackageParams",
    "DeployParams",
    "CustomParams",
    "AssertionParams",
    "InputParams",
    "BuildStep",
    "TestStep",
    "CookStep",
    "PackageStep",
    "DeployStep",
    "CustomStep",
    "Step",
    "PhaseSpec",
    "WorkflowSpec",
    "WORKFLOW_SCHEMA",
    "ValidationResult",
    "ValidationError",
    "ValidationEngine",
    "validate_workflow_file",
]
