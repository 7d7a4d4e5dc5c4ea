from devincubator.errors import UnknownKindError
from devincubator.modules.base import CurrentState, ModuleContext, StateModule
from devincubator.modules.command import CommandModule
from devincubator.modules.extension import ExtensionModule
from devincubator.modules.file import FileModule
from devincubator.modules.membership import GroupMembershipModule
from devincubator.modules.package import PackageModule
from devincubator.modules.repository import RepositoryModule
from devincubator.modules.service import RestartServiceModule, ServiceModule

_MODULES: dict[str, type[StateModule]] = {
    "command": CommandModule,
    "extension": ExtensionModule,
    "file": FileModule,
    "group_membership": GroupMembershipModule,
    "package": PackageModule,
    "repository": RepositoryModule,
    "service": ServiceModule,
    "service_restart": RestartServiceModule,
}


class ModuleRegistry:
    """Maps assertion kinds to the module that checks and applies them."""

    def __init__(self) -> None:
        self._modules: dict[str, StateModule] = {}

    def register(self, kind: str, module: StateModule) -> None:
        if kind in self._modules:
            raise ValueError(f"A module is already registered for kind {kind!r}")
        self._modules[kind] = module

    def resolve(self, kind: str) -> StateModule:
        module = self._modules.get(kind)
        if module is None:
            raise UnknownKindError(kind, list(self._modules))
        return module

    def kinds(self) -> list[str]:
        return sorted(self._modules)

    def __contains__(self, kind: str) -> bool:
        return kind in self._modules


def default_registry() -> ModuleRegistry:
    registry = ModuleRegistry()
    for kind, cls in _MODULES.items():
        registry.register(kind, cls())
    return registry


__all__ = [
    "CurrentState",
    "ModuleContext",
    "ModuleRegistry",
    "StateModule",
    "UnknownKindError",
    "default_registry",
]
