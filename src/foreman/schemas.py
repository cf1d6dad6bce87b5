from __future__ import annotations

import copy
from types import MappingProxyType
from typing import Any

from foreman.agents import AgentKind


def _string_list() -> dict[str, Any]:
    return {"type": "array", "items": {"type": "string"}}


def _object(properties: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": list(properties),
        "additionalProperties": False,
    }


_QUESTION = _object({"question": {"type": "string"}, "reason": {"type": "string"}})

_ANALYSIS = _object(
    {
        "needsClarification": {"type": "boolean"},
        "questions": {"type": "array", "items": _QUESTION},
        "confidence": {"type": "number"},
        "reasoning": {"type": "string"},
    }
)

JSON_SCHEMAS: MappingProxyType[str, dict[str, Any]] = MappingProxyType(
    {
        AgentKind.PRD_GENERATOR: _object(
            {"success": {"type": "boolean"}, "sections": _string_list()}
        ),
        AgentKind.PRD_ANALYZER: _ANALYSIS,
        AgentKind.BUSINESS_ANALYZER: _ANALYSIS,
        AgentKind.CLARIFICATION_ANSWERER: _object(
            {
                "question": {"type": "string"},
                "answer": {"type": "string"},
                "confident": {"type": "boolean"},
                "evidence": {"type": "string"},
            }
        ),
        AgentKind.PLANNER: _object(
            {
                "assignments": {
                    "type": "array",
                    "items": _object(
                        {
                            "id": {"type": "string"},
                            "title": {"type": "string"},
                            "description": {"type": "string"},
                            "dependsOn": _string_list(),
                            "estimatedFiles": _string_list(),
                        }
                    ),
                }
            }
        ),
        AgentKind.MICROPLANNER: _object(
            {
                "steps": {
                    "type": "array",
                    "items": _object(
                        {
                            "description": {"type": "string"},
                            "file": {"type": "string"},
                            "action": {"type": "string", "enum": ["modify", "create", "delete"]},
                        }
                    ),
                },
                "considerations": _string_list(),
                "filesToRead": _string_list(),
            }
        ),
        AgentKind.IMPLEMENTER: _object(
            {
                "filesModified": _string_list(),
                "filesCreated": _string_list(),
                "filesDeleted": _string_list(),
                "summary": {"type": "string"},
                "deviations": _string_list(),
            }
        ),
        AgentKind.VERIFIER: _object(
            {
                "passed": {"type": "boolean"},
                "issues": {
                    "type": "array",
                    "items": _object(
                        {
                            "severity": {"type": "string", "enum": ["error", "warning"]},
                            "file": {"type": "string"},
                            "description": {"type": "string"},
                        }
                    ),
                },
                "buildPassed": {"type": "boolean"},
                "buildOutput": {"type": "string"},
            }
        ),
        AgentKind.FINAL_VERIFIER: _object(
            {
                "passed": {"type": "boolean"},
                "commitMessage": {"type": "string"},
                "feedback": {"type": "string"},
                "unmetRequirements": _string_list(),
            }
        ),
    }
)

_MOCK_RESULTS: dict[str, dict[str, Any]] = {
    AgentKind.PRD_GENERATOR: {
        "success": True,
        "sections": ["Overview", "Requirements", "Acceptance Criteria", "Constraints", "Out of Scope"],
    },
    AgentKind.PRD_ANALYZER: {
        "needsClarification": False,
        "questions": [],
        "confidence": 9,
        "reasoning": "Dry run: PRD looks complete",
    },
    AgentKind.BUSINESS_ANALYZER: {
        "needsClarification": False,
        "questions": [],
        "confidence": 9,
        "reasoning": "Dry run: business requirements look clear",
    },
    AgentKind.CLARIFICATION_ANSWERER: {
        "question": "Mock question",
        "answer": "Dry run: mock answer",
        "confident": True,
        "evidence": "Dry run",
    },
    AgentKind.PLANNER: {
        "assignments": [
            {
                "id": "assignment-1",
                "title": "Mock Assignment",
                "description": "This is a dry run mock assignment",
                "dependsOn": [],
                "estimatedFiles": ["src/main.py"],
            }
        ]
    },
    AgentKind.MICROPLANNER: {
        "steps": [{"description": "Mock step", "file": "src/main.py", "action": "modify"}],
        "considerations": [],
        "filesToRead": [],
    },
    AgentKind.IMPLEMENTER: {
        "filesModified": [],
        "filesCreated": [],
        "filesDeleted": [],
        "summary": "Dry run: no changes",
        "deviations": [],
    },
    AgentKind.VERIFIER: {
        "passed": True,
        "issues": [],
        "buildPassed": True,
        "buildOutput": "Dry run: skipped",
    },
    AgentKind.FINAL_VERIFIER: {
        "passed": True,
        "commitMessage": "feat: dry run",
        "feedback": "",
        "unmetRequirements": [],
    },
}


def schema_for(agent: str) -> dict[str, Any]:
    return JSON_SCHEMAS[agent]


def mock_result(agent: str) -> dict[str, Any]:
    return copy.deepcopy(_MOCK_RESULTS.get(agent, {}))
