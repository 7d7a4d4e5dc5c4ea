"""Immutable plan model: groups of ordered state assertions."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping, TYPE_CHECKING

from pydantic import ValidationError

from devincubator.config import AssertionConfig, Check, PlanConfig
from devincubator.errors import ConfigError
from devincubator.facts import gather_facts
from devincubator.templating import render_value, render_vars

if TYPE_CHECKING:
    from devincubator.modules import ModuleRegistry

ALWAYS_TAG = "always"
NEVER_TAG = "never"


def _freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Turn frozen parameters back into plain dicts and lists."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class StateAssertion:
    """A single desired system condition and the parameters to check or enforce it."""

    kind: str
    identifier: str
    parameters: Mapping[str, Any]
    desired_state: str | None = None
    tags: frozenset[str] = frozenset()
    group: str = ""
    timeout: int | None = None
    notify: tuple[str, ...] = ()
    verify: bool = True

    @property
    def qualified_name(self) -> str:
        return f"{self.group}/{self.identifier}" if self.group else self.identifier


@dataclass(frozen=True)
class Group:
    name: str
    assertions: tuple[StateAssertion, ...]
    tags: frozenset[str] = frozenset()
    handlers: tuple[StateAssertion, ...] = ()
    checks: tuple[Check, ...] = field(default=())


@dataclass(frozen=True)
class Plan:
    name: str
    groups: tuple[Group, ...]
    requires: tuple[str, ...] = ()
    variables: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def __iter__(self):
        return iter(self.groups)

    def __len__(self) -> int:
        return len(self.groups)


def _loop_label(item: Any, index: int) -> str:
    if isinstance(item, (str, int, float)) and not isinstance(item, bool):
        return str(item)
    return str(index)


def _expand_assertion(
    cfg: AssertionConfig,
    group_name: str,
    group_tags: frozenset[str],
    context: dict[str, Any],
) -> list[StateAssertion]:
    if cfg.loop is None:
        items: list[tuple[str, dict[str, Any]]] = [(cfg.id, context)]
    else:
        loop = render_value(cfg.loop, context)
        if not isinstance(loop, (list, tuple)):
            raise ConfigError(
                f"{group_name}/{cfg.id}: loop must render to a list, got {type(loop).__name__}"
            )
        items = [
            (f"{cfg.id}[{_loop_label(item, i)}]", {**context, "item": item})
            for i, item in enumerate(loop)
        ]

    expanded = []
    for identifier, item_context in items:
        params = render_value(cfg.params, item_context)
        state = render_value(cfg.state, item_context) if cfg.state else None
        expanded.append(
            StateAssertion(
                kind=cfg.kind,
                identifier=identifier,
                parameters=_freeze(params),
                desired_state=state,
                tags=frozenset(cfg.tags) | group_tags,
                group=group_name,
                timeout=cfg.timeout,
                notify=tuple(cfg.notify),
                verify=cfg.verify,
            )
        )
    return expanded


def build_plan(
    config: PlanConfig,
    registry: ModuleRegistry,
    facts: dict[str, Any] | None = None,
) -> Plan:
    """Render templates, expand loops and validate a loaded config.

    Everything that can be checked without touching the system is checked
    here, so a plan that builds will not fail for configuration reasons
    half-way through a run.
    """
    if facts is None:
        facts = gather_facts()
    variables = render_vars(config.vars, facts)
    context = {**facts, **variables}

    groups = []
    for group_cfg in config.groups:
        group_tags = frozenset(group_cfg.tags)
        assertions: list[StateAssertion] = []
        for cfg in group_cfg.assertions:
            assertions.extend(_expand_assertion(cfg, group_cfg.name, group_tags, context))
        handlers: list[StateAssertion] = []
        for cfg in group_cfg.handlers:
            if cfg.loop is not None:
                raise ConfigError(f"{group_cfg.name}/{cfg.id}: handlers cannot loop")
            handlers.extend(_expand_assertion(cfg, group_cfg.name, group_tags, context))
        groups.append(
            Group(
                name=group_cfg.name,
                assertions=tuple(assertions),
                tags=group_tags,
                handlers=tuple(handlers),
                checks=tuple(group_cfg.checks),
            )
        )

    plan = Plan(
        name=config.name,
        groups=tuple(groups),
        requires=tuple(config.requires),
        variables=_freeze(variables),
    )
    validate_plan(plan, registry)
    return plan


def validate_plan(plan: Plan | Iterable[Group], registry: ModuleRegistry) -> None:
    """Raise ConfigError (or UnknownKindError) for the first invalid assertion.

    Duplicate identifiers within a group are rejected rather than run twice.
    """
    for group in plan:
        seen: set[str] = set()
        handler_ids = {h.identifier for h in group.handlers}
        for assertion in [*group.assertions, *group.handlers]:
            if assertion.identifier in seen:
                raise ConfigError(
                    f"Duplicate assertion identifier '{assertion.identifier}' in group '{group.name}'"
                )
            seen.add(assertion.identifier)

            module = registry.resolve(assertion.kind)
            if assertion.desired_state is not None and assertion.desired_state not in module.states:
                raise ConfigError(
                    f"{assertion.qualified_name}: state '{assertion.desired_state}' is not valid "
                    f"for kind '{assertion.kind}' (expected one of: {', '.join(module.states)})"
                )
            try:
                module.parse_params(assertion)
            except ValidationError as exc:
                raise ConfigError(f"{assertion.qualified_name}: invalid params: {exc}") from exc

            for handler in assertion.notify:
                if handler not in handler_ids:
                    raise ConfigError(
                        f"{assertion.qualified_name}: notifies unknown handler '{handler}'"
                    )


def is_selected(
    assertion: StateAssertion,
    tags: set[str] | frozenset[str] | None = None,
    skip_tags: set[str] | frozenset[str] | None = None,
) -> bool:
    """Decide whether *assertion* runs under the given tag selection.

    Without a selection everything runs except ``never``-tagged assertions.
    With one, an assertion runs when its tags intersect it or it is tagged
    ``always``. ``skip_tags`` always wins.
    """
    if skip_tags and assertion.tags & set(skip_tags):
        return False
    if not tags:
        return NEVER_TAG not in assertion.tags
    return bool(assertion.tags & set(tags)) or ALWAYS_TAG in assertion.tags


def select(
    plan: Plan | Iterable[Group],
    tags: set[str] | frozenset[str] | None = None,
    skip_tags: set[str] | frozenset[str] | None = None,
) -> list[Group]:
    """Return the groups of *plan* restricted to the selected assertions.

    Handlers are kept whole; they run only when notified. Groups left with
    nothing to run are dropped.
    """
    selected = []
    for group in plan:
        assertions = tuple(a for a in group.assertions if is_selected(a, tags, skip_tags))
        group_selected = _group_selected(group, tags, skip_tags)
        checks = group.checks if group_selected else ()
        if not assertions and not checks:
            continue
        selected.append(
            Group(
                name=group.name,
                assertions=assertions,
                tags=group.tags,
                handlers=group.handlers,
                checks=checks,
            )
        )
    return selected


def _group_selected(
    group: Group,
    tags: set[str] | frozenset[str] | None,
    skip_tags: set[str] | frozenset[str] | None,
) -> bool:
    if skip_tags and group.tags & set(skip_tags):
        return False
    if not tags:
        return NEVER_TAG not in group.tags
    return bool(group.tags & set(tags)) or ALWAYS_TAG in group.tags
