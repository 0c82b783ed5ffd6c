"""
Reusable topology templates.

A template is a frozen node/connection topology plus free-form config.
Sessions never share a template's objects: ``copy_topology`` hands out
deep copies.
"""

import json
import logging
from pathlib import Path
from typing import Any

import aiofiles
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import PersistenceError, TemplateNotFoundError
from .models import Connection, NodeRecord, NodeType, RouterMode

logger = logging.getLogger(__name__)


class Template(BaseModel):
    """A named, immutable topology preset."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str
    description: str = ""
    icon: str | None = None
    nodes: tuple[NodeRecord, ...] = ()
    connections: tuple[Connection, ...] = ()
    config: dict[str, Any] = Field(default_factory=dict)

    @field_validator("connections", mode="before")
    @classmethod
    def derive_connection_ids(cls, v: Any) -> Any:
        """Fill in connection IDs omitted from template files."""
        if not isinstance(v, (list, tuple)):
            return v
        items = []
        for item in v:
            if isinstance(item, dict) and "id" not in item:
                item = {
                    **item,
                    "id": Connection.generate_connection_id(item["source"], item["target"]),
                }
            items.append(item)
        return items

    def copy_topology(self) -> tuple[list[NodeRecord], list[Connection]]:
        """Return deep copies of the template's nodes and connections."""
        return (
            [node.model_copy(deep=True) for node in self.nodes],
            [connection.model_copy(deep=True) for connection in self.connections],
        )


def _service(service_id: str, x: float, y: float) -> NodeRecord:
    return NodeRecord(id=service_id, type=NodeType.SERVICE, x=x, y=y, data={"service": service_id})


def _key(service_id: str, x: float, y: float, name: str | None = None) -> NodeRecord:
    data: dict[str, Any] = {"service": service_id}
    if name:
        data["name"] = name
    return NodeRecord(id=name or f"key:{service_id}", type=NodeType.KEY, x=x, y=y, label=name, data=data)


def _router(router_id: str, x: float, y: float, mode: RouterMode = RouterMode.FAILOVER) -> NodeRecord:
    return NodeRecord(id=router_id, type=NodeType.ROUTER, x=x, y=y, data={"mode": mode.value})


def _integration(integration_id: str, x: float, y: float) -> NodeRecord:
    return NodeRecord(
        id=integration_id,
        type=NodeType.INTEGRATION,
        x=x,
        y=y,
        data={"integration": integration_id},
    )


def _session(name: str, x: float, y: float) -> NodeRecord:
    return NodeRecord(id=name, type=NodeType.SESSION, x=x, y=y, label=name, data={"name": name})


def _link(source: str, target: str, label: str = "", priority: int = 0) -> Connection:
    return Connection(
        id=Connection.generate_connection_id(source, target),
        source=source,
        target=target,
        label=label,
        priority=priority,
    )


BUILTIN_TEMPLATES: tuple[Template, ...] = (
    Template(
        id="all-glm5",
        name="ALL GLM-5 MODAL",
        description="Full GLM-5 multimodal setup across all providers",
        icon="🧠",
        nodes=(
            _service("openrouter", 10, 5),
            _service("zhipu", 10, 15),
            _key("openrouter", 40, 5),
            _key("zhipu", 40, 15),
            _integration("openclaw", 70, 10),
            _session("GLM-5-Session", 100, 10),
        ),
        connections=(
            _link("openrouter", "key:openrouter", "auth"),
            _link("key:openrouter", "openclaw", "api"),
            _link("zhipu", "key:zhipu", "auth"),
            _link("key:zhipu", "openclaw", "backup"),
            _link("openclaw", "GLM-5-Session", "out"),
        ),
        config={"model": "glm-5", "fallback": True, "load_balance": True},
    ),
    Template(
        id="kiro-proxy-4.5",
        name="ALL KIRO PROXY 4.5",
        description="Kiro Gateway proxy chain with fallback chain",
        icon="🔮",
        nodes=(
            _service("kiro", 10, 5),
            _service("anthropic", 10, 15),
            _service("openrouter", 10, 25),
            _key("kiro", 40, 5),
            _key("anthropic", 40, 15),
            _key("openrouter", 40, 25),
            _router("kiro-router", 70, 15),
            _integration("openclaw", 100, 10),
            _integration("claude-code", 100, 20),
            _session("Kiro-Primary", 130, 10),
            _session("Kiro-Fallback", 130, 20),
        ),
        connections=(
            _link("kiro", "key:kiro", "auth"),
            _link("anthropic", "key:anthropic", "auth"),
            _link("openrouter", "key:openrouter", "auth"),
            _link("key:kiro", "kiro-router", "primary", priority=3),
            _link("key:anthropic", "kiro-router", "fallback", priority=2),
            _link("key:openrouter", "kiro-router", "backup", priority=1),
            _link("kiro-router", "openclaw", "route", priority=2),
            _link("kiro-router", "claude-code", "route", priority=1),
            _link("openclaw", "Kiro-Primary", "out"),
            _link("claude-code", "Kiro-Fallback", "out"),
        ),
        config={"auto_rotate": True, "health_check": True, "rotate_interval": 3600},
    ),
    Template(
        id="multi-model-ensemble",
        name="Multi-Model Ensemble",
        description="Parallel processing across multiple models",
        icon="⚡",
        nodes=(
            _service("anthropic", 10, 5),
            _service("openai", 10, 15),
            _service("groq", 10, 25),
            _service("openrouter", 10, 35),
            _key("anthropic", 40, 5),
            _key("openai", 40, 15),
            _key("groq", 40, 25),
            _key("openrouter", 40, 35),
            _router("ensemble-router", 70, 20, RouterMode.PARALLEL),
            _integration("openclaw", 100, 20),
            _session("Ensemble-Out", 130, 20),
        ),
        connections=(
            _link("anthropic", "key:anthropic", "auth"),
            _link("openai", "key:openai", "auth"),
            _link("groq", "key:groq", "auth"),
            _link("openrouter", "key:openrouter", "auth"),
            _link("key:anthropic", "ensemble-router", "claude"),
            _link("key:openai", "ensemble-router", "gpt"),
            _link("key:groq", "ensemble-router", "llama"),
            _link("key:openrouter", "ensemble-router", "universal"),
            _link("ensemble-router", "openclaw", "merged"),
            _link("openclaw", "Ensemble-Out", "out"),
        ),
        config={"mode": "parallel", "merge_strategy": "voting", "timeout": 30000},
    ),
    Template(
        id="fallback-chain",
        name="Fallback Chain",
        description="Sequential fallback through multiple providers",
        icon="🔗",
        nodes=(
            _service("anthropic", 10, 10),
            _service("openrouter", 10, 20),
            _service("groq", 10, 30),
            _key("anthropic", 40, 10),
            _key("openrouter", 40, 20),
            _key("groq", 40, 30),
            _router("fallback-router", 70, 20, RouterMode.FAILOVER),
            _integration("claude-code", 100, 20),
            _session("Fallback-Session", 130, 20),
        ),
        connections=(
            _link("anthropic", "key:anthropic", "auth"),
            _link("openrouter", "key:openrouter", "auth"),
            _link("groq", "key:groq", "auth"),
            _link("key:anthropic", "fallback-router", "p1"),
            _link("key:openrouter", "fallback-router", "p2"),
            _link("key:groq", "fallback-router", "p3"),
            _link("fallback-router", "claude-code", "active"),
            _link("claude-code", "Fallback-Session", "out"),
        ),
        config={"mode": "failover", "retry_attempts": 3, "health_check_interval": 60},
    ),
    Template(
        id="round-robin",
        name="Round Robin Load Balancer",
        description="Distribute load across multiple keys",
        icon="🔄",
        nodes=(
            _service("openrouter", 10, 10),
            _key("openrouter", 40, 5, name="Key-1"),
            _key("openrouter", 40, 15, name="Key-2"),
            _key("openrouter", 40, 25, name="Key-3"),
            _router("rr-router", 70, 15, RouterMode.ROUND_ROBIN),
            _integration("openclaw", 100, 15),
            _session("Load-Balanced", 130, 15),
        ),
        connections=(
            _link("openrouter", "Key-1", "auth"),
            _link("openrouter", "Key-2", "auth"),
            _link("openrouter", "Key-3", "auth"),
            _link("Key-1", "rr-router", "in"),
            _link("Key-2", "rr-router", "in"),
            _link("Key-3", "rr-router", "in"),
            _link("rr-router", "openclaw", "out"),
            _link("openclaw", "Load-Balanced", "session"),
        ),
        config={"mode": "round-robin", "weight_balanced": True},
    ),
)


class TemplateRegistry:
    """
    Lookup table of templates by ID.

    Example:
        >>> registry = TemplateRegistry()
        >>> registry.get("fallback-chain").name
        'Fallback Chain'
    """

    def __init__(self, include_builtin: bool = True) -> None:
        self._templates: dict[str, Template] = {}
        if include_builtin:
            for template in BUILTIN_TEMPLATES:
                self.register(template)

    def __contains__(self, template_id: object) -> bool:
        return template_id in self._templates

    def __len__(self) -> int:
        return len(self._templates)

    def register(self, template: Template | dict[str, Any]) -> Template:
        """
        Register a template, replacing any template with the same ID.

        Raises:
            ValidationError: If a dict template is malformed
        """
        if not isinstance(template, Template):
            template = Template.model_validate(template)
        if template.id in self._templates:
            logger.debug(f"Replacing template '{template.id}'")
        self._templates[template.id] = template
        return template

    def get(self, template_id: str) -> Template:
        """
        Get a template by ID.

        Raises:
            TemplateNotFoundError: If no template has this ID
        """
        if template_id not in self._templates:
            raise TemplateNotFoundError(template_id)
        return self._templates[template_id]

    async def load_directory(self, path: Path | str) -> list[Template]:
        """
        Register every ``<template_id>.json`` file in a directory.

        The file stem is used as the template ID when the document has none.

        Returns:
            The templates that were registered

        Raises:
            PersistenceError: If a file cannot be read or is not valid JSON
            ValidationError: If a template document is malformed
        """
        directory = Path(path)
        loaded: list[Template] = []
        for file_path in sorted(directory.glob("*.json")):
            try:
                async with aiofiles.open(file_path, mode="r", encoding="utf-8") as f:
                    document = json.loads(await f.read())
            except (OSError, json.JSONDecodeError) as e:
                raise PersistenceError(f"Failed to read template {file_path}: {e}") from e

            document.setdefault("id", file_path.stem)
            document.setdefault("name", document["id"])
            loaded.append(self.register(document))

        logger.info(f"Loaded {len(loaded)} templates from {directory}")
        return loaded

    # Defined last so the annotations above still see the builtin ``list``
    def list(self) -> list[Template]:
        """All registered templates in registration order."""
        return list(self._templates.values())
