"""
ValidationEngine for CI Robot workflows.
Orchestrates JSON Schema validation, Pydantic model validation, and cross-reference checks.
"""

import yaml
from pathlib import Path
from typing import Any, Dict, Optional
import jsonschema
from pydantic import ValidationError as PydanticValidationError

from cirobot.policy import CI_PROFILE, PolicyEnforcer
from .schema import WORKFLOW_SCHEMA
from .workflow import KNOWN_ACTIONS, WorkflowSpec, ValidationResult


class ValidationEngine:
    """
    Multi-layer validation engine for workflows.

    Validation layers:
    1. YAML parse
    2. JSON Schema structural validation
    3. Pydantic model validation (typed step params)
    4. Cross-reference checks (actions, CI allowlist, empty phases) as warnings
    5. Metadata for valid workflows
    """

    def __init__(self, schema: Optional[Dict] = None, policy: Optional[PolicyEnforcer] = None):
        """
        Args:
            schema: JSON schema to check against (default: WORKFLOW_SCHEMA)
            policy: Enforcer used for custom step warnings (default: ci profile)
        """
        self.schema = schema or WORKFLOW_SCHEMA
        self.policy = policy or PolicyEnforcer(CI_PROFILE)

    def validate_workflow(self, workflow_path: Path, cross_reference_check: bool = True) -> ValidationResult:
        """
        Validate a workflow file through all validation layers.

        Returns:
            ValidationResult with all errors and warnings
        """
        result = ValidationResult(is_valid=True)
        workflow_path = Path(workflow_path)

        # Layer 1: Load and parse YAML
        try:
            with open(workflow_path) as f:
                workflow_data = yaml.safe_load(f)
        except FileNotFoundError:
            result.add_error("file", f"Workflow file not found: {workflow_path}")
            return result
        except yaml.YAMLError as e:
            result.add_error("yaml", f"Invalid YAML: {e}")
            return result

        return self.validate_data(workflow_data, result, cross_reference_check)

    def validate_data(self, workflow_data: Any, result: Optional[ValidationResult] = None,
                      cross_reference_check: bool = True) -> ValidationResult:
        """Layers 2-5 on an already parsed workflow mapping."""
        result = result or ValidationResult(is_valid=True)

        if not isinstance(workflow_data, dict):
            result.add_error("format", "Workflow must be a YAML object")
            return result

        # Layer 2: JSON Schema validation
        try:
            jsonschema.validate(workflow_data, self.schema)
        except jsonschema.ValidationError as e:
            path = ".".join(str(p) for p in e.absolute_path) if e.absolute_path else "root"
            result.add_error("schema", f"Schema validation failed at {path}: {e.message}")
            return result
        except jsonschema.SchemaError as e:
            result.add_error("schema", f"Invalid schema: {e.message}")
            return result

        # Layer 3: Pydantic model validation
        try:
            workflow = WorkflowSpec.model_validate(workflow_data)
        except PydanticValidationError as e:
            for error in e.errors():
                field_path = ".".join(str(loc) for loc in error["loc"])
                result.add_error(field_path, error["msg"])
            return result

        # Layer 4: Cross-reference validation
        if cross_reference_check:
            self._validate_cross_references(workflow, result)

        # Layer 5: Metadata
        if result.is_valid:
            result.metadata = {
                "name": workflow.name,
                "phases": len(workflow.phases),
                "steps": workflow.step_count(),
                "parallel_phases": sum(1 for p in workflow.phases if p.parallel),
                "rollback_on_failure": workflow.rollback_on_failure,
            }

        return result

    def _validate_cross_references(self, workflow: WorkflowSpec, result: ValidationResult):
        """
        - Warn on empty phases
        - Warn on actions the daemon does not dispatch for the step type
        - Warn on custom commands the ci profile would reject
        """
        for phase in workflow.phases:
            if not phase.steps:
                result.add_warning(f"phases.{phase.name}", "Phase has no steps")

        for phase, index, step in workflow.iter_steps():
            location = f"phases.{phase.name}.steps.{index}"
            known = KNOWN_ACTIONS.get(step.type)
            if known is not None and step.action not in known:
                result.add_warning(
                    f"{location}.action",
                    f"Unknown {step.type} action '{step.action}'. Known: {', '.join(known)}"
                )
            if step.type == "custom":
                violation = self.policy.validate_command(step.action)
                if violation:
                    result.add_warning(
                        f"{location}.action",
                        f"Command '{step.action}' is not allowlisted in the {self.policy.profile_name} profile"
                    )


def validate_workflow_file(workflow_path: str, verbose: bool = False) -> bool:
    """
    Convenience function to validate a workflow file.

    Returns:
        True if validation passed, False otherwise
    """
    engine = ValidationEngine()
    result = engine.validate_workflow(Path(workflow_path))

    if verbose:
        print(result.format_report())

    return result.is_valid
