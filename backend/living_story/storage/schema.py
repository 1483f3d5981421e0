"""GQLAlchemy schema models for Memgraph."""

from __future__ import annotations

from typing import Any

from gqlalchemy import Node

INDEX_DEFINITIONS = [
    {"label": "PhaseState", "property": "id"},
    {"label": "PhaseState", "properties": ["project_id", "phase"]},
    {"label": "StoryChange", "property": "id"},
    {"label": "StoryChange", "properties": ["project_id", "status"]},
    {"label": "StoryChange", "properties": ["project_id", "timestamp"]},
    {"label": "StoryChange", "properties": ["project_id", "phase", "field", "source_version"]},
]


class PhaseState(Node):
    __label__ = "PhaseState"
    id: str
    project_id: str
    phase: int
    value: str
    version: int
    updated_at: str


class StoryChangeNode(Node):
    __label__ = "StoryChange"
    id: str
    project_id: str
    phase: int
    field: str
    source_phase: int
    source_version: int
    status: str
    timestamp: str
    sequence: int
    payload: str
    preview: str | None = None


def index_statements() -> list[str]:
    statements: list[str] = []
    for definition in INDEX_DEFINITIONS:
        label = definition["label"]
        props: Any = definition.get("properties") or [definition["property"]]
        statements.append(f"CREATE INDEX ON :{label}({', '.join(props)});")
    return statements
