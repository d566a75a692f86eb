"""
JSON Schema for workflow files (structural layer, checked before the pydantic models).
"""

_STEP = {
    "type": "object",
    "required": ["type", "action"],
    "properties": {
        "type": {"enum": ["build", "test", "cook", "package", "deploy", "custom"]},
        "action": {"type": "string", "minLength": 1},
        "params": {"type": "object"},
        "timeout": {"type": "integer", "minimum": 1},
    },
    "additionalProperties": False,
}

_PHASE = {
    "type": "object",
    "required": ["name"],
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "steps": {"type": "array", "items": _STEP},
        "parallel": {"type": "boolean"},
        "continueOnError": {"type": "boolean"},
        "continue_on_error": {"type": "boolean"},
    },
    "additionalProperties": False,
}

WORKFLOW_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "CI Robot workflow",
    "type": "object",
    "required": ["name", "phases"],
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "description": {"type": ["string", "null"]},
        "phases": {"type": "array", "minItems": 1, "items": _PHASE},
        "rollbackOnFailure": {"type": "boolean"},
        "rollback_on_failure": {"type": "boolean"},
        "timeout": {"type": "integer", "minimum": 1},
        "artifacts": {"type": "array", "items": {"type": "string"}},
    },
    "additionalProperties": False,
}
