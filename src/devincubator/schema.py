"""JSON Schema and a markdown reference for plan files.

The plan schema leaves ``params`` open because its shape depends on
``kind``. Each registered kind's params model is published under
``$defs`` and indexed by ``x-kinds`` so editors and the docs can show it.
"""

from __future__ import annotations

import json
from graphlib import TopologicalSorter
from pathlib import Path
from typing import Any

from devincubator.config import PlanConfig
from devincubator.modules import ModuleRegistry, default_registry

REF_PREFIX = "#/$defs/"


def _refs(node: Any) -> set[str]:
    if isinstance(node, dict):
        found = {node["$ref"][len(REF_PREFIX):]} if str(node.get("$ref", "")).startswith(REF_PREFIX) else set()
        for value in node.values():
            found |= _refs(value)
        return found
    if isinstance(node, list):
        return set().union(*(_refs(v) for v in node)) if node else set()
    return set()


def _dependency_order(defs: dict[str, Any]) -> dict[str, Any]:
    """Definitions reordered so each one follows everything it references."""
    graph = {name: _refs(body) & defs.keys() for name, body in defs.items()}
    return {name: defs[name] for name in TopologicalSorter(graph).static_order()}


def _params_def_name(kind: str) -> str:
    return "".join(part.capitalize() for part in kind.split("_")) + "Params"


def generate_json_schema(registry: ModuleRegistry | None = None) -> dict[str, Any]:
    registry = registry or default_registry()
    schema = PlanConfig.model_json_schema()
    defs: dict[str, Any] = schema.pop("$defs", {})

    kinds: dict[str, Any] = {}
    for kind in registry.kinds():
        module = registry.resolve(kind)
        name = _params_def_name(kind)
        defs[name] = module.params_model.model_json_schema(ref_template=REF_PREFIX + "{model}")
        kinds[kind] = {"states": list(module.states), "params": {"$ref": REF_PREFIX + name}}

    schema["$defs"] = _dependency_order(defs)
    schema["x-kinds"] = kinds
    return schema


def write_json_schema(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(generate_json_schema(), indent=2) + "\n")


def _field_lines(definition: dict[str, Any]) -> list[str]:
    required = set(definition.get("required", []))
    lines = []
    for field, prop in definition.get("properties", {}).items():
        kind = prop.get("type") or " | ".join(
            alt.get("type", "object") for alt in prop.get("anyOf", [])
        ) or "object"
        note = "required" if field in required else f"default {json.dumps(prop.get('default'))}"
        lines.append(f"  - `{field}`: {kind} ({note})")
    return lines


def generate_schema_doc(registry: ModuleRegistry | None = None) -> str:
    schema = generate_json_schema(registry)
    defs = schema["$defs"]

    lines = [
        "# devincubator plan schema",
        "",
        "Generated from the plan models and the registered assertion kinds.",
        "",
        "## Plan",
        *_field_lines(schema),
        "",
        "## Group",
        *_field_lines(defs["GroupConfig"]),
        "",
        "## Assertion",
        *_field_lines(defs["AssertionConfig"]),
        "",
        "## Assertion kinds",
    ]
    for kind, entry in schema["x-kinds"].items():
        params = defs[entry["params"]["$ref"][len(REF_PREFIX):]]
        lines.append(f"- `{kind}` (states: {', '.join(entry['states'])})")
        lines.extend(_field_lines(params))
    lines += [
        "",
        "## Checks",
        "- `tool`: executable on PATH, version reported",
        "- `socket`: path exists and is a socket",
        "- `command`: shell command exits with `expected_exit_code`",
        "",
    ]
    return "\n".join(lines)


def write_schema_doc(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(generate_schema_doc())
