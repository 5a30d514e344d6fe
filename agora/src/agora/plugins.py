"""Plugin descriptors and the process-scoped plugin registry.

A plugin contributes permission definitions, custom activity types and
address-pattern resolvers for one or more context kinds. Plugins are
registered once at startup; every lookup afterwards is a plain dict read.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Iterable, List, Optional, Type

from pydantic import BaseModel, ValidationError

from .roles import Role

if TYPE_CHECKING:  # pragma: no cover
    from .activities import Activity
    from .contexts import Context
    from .memberships import Membership


logger = logging.getLogger(__name__)

CONTEXT_PATTERN_PREFIX = "context:{id}:"

AddressResolverFn = Callable[[str, str], Awaitable[bool]]


@dataclass(frozen=True)
class PluginPermission:
    id: str
    name: str
    description: str
    default_roles: tuple[Role, ...]


@dataclass(frozen=True)
class PluginActivityType:
    type: str
    label: str
    icon: str
    description: str = ""


@dataclass(frozen=True)
class AddressPattern:
    pattern: str
    label: str
    resolver: AddressResolverFn

    @property
    def suffix(self) -> str:
        if self.pattern.startswith(CONTEXT_PATTERN_PREFIX):
            return self.pattern[len(CONTEXT_PATTERN_PREFIX) :]
        return self.pattern


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors)}


@dataclass
class PluginHooks:
    on_context_create: Optional[Callable[["Context", dict], Awaitable[None]]] = None
    on_context_update: Optional[Callable[["Context", dict, dict], Awaitable[None]]] = None
    on_context_delete: Optional[Callable[["Context"], Awaitable[None]]] = None
    on_member_join: Optional[Callable[["Membership", "Context"], Awaitable[None]]] = None
    on_member_leave: Optional[Callable[["Membership", "Context"], Awaitable[None]]] = None
    on_activity_create: Optional[Callable[["Activity", "Context"], Awaitable[None]]] = None
    validate_data: Optional[Callable[[dict, "Context"], Awaitable[ValidationResult]]] = None


@dataclass
class Plugin:
    id: str
    name: str
    description: str
    version: str
    context_types: tuple[str, ...]
    data_schema: Optional[Type[BaseModel]] = None
    default_data: Dict[str, Any] = field(default_factory=dict)
    member_schema: Optional[Type[BaseModel]] = None
    activity_types: List[PluginActivityType] = field(default_factory=list)
    address_patterns: List[AddressPattern] = field(default_factory=list)
    hooks: PluginHooks = field(default_factory=PluginHooks)
    permissions: List[PluginPermission] = field(default_factory=list)

    def find_permission(self, permission_id: str) -> PluginPermission | None:
        for permission in self.permissions:
            if permission.id == permission_id:
                return permission
        return None

    def permission_token(self, permission_id: str) -> str:
        return f"plugin.{self.id}.{permission_id}"


def format_validation_errors(exc: ValidationError) -> List[str]:
    errors = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = error.get("msg", "invalid value")
        errors.append(f"{location}: {message}" if location else message)
    return errors


def _validate_with_schema(schema: Optional[Type[BaseModel]], data: Any) -> ValidationResult:
    if not isinstance(data, dict):
        return ValidationResult(False, ("plugin data must be an object",))
    if schema is None:
        return ValidationResult(True)
    try:
        schema.model_validate(data)
    except ValidationError as exc:
        return ValidationResult(False, tuple(format_validation_errors(exc)))
    return ValidationResult(True)


class PluginRegistry:
    """Holds registered plugins keyed by id."""

    def __init__(self) -> None:
        self._plugins: Dict[str, Plugin] = {}

    def register(self, plugin: Plugin) -> None:
        if plugin.id in self._plugins:
            logger.warning("plugin %r already registered, overwriting", plugin.id)
        self._plugins[plugin.id] = plugin

    def unregister(self, plugin_id: str) -> bool:
        return self._plugins.pop(plugin_id, None) is not None

    def get(self, plugin_id: str) -> Plugin | None:
        return self._plugins.get(plugin_id)

    def has(self, plugin_id: str) -> bool:
        return plugin_id in self._plugins

    def ids(self) -> List[str]:
        return list(self._plugins.keys())

    def all(self) -> List[Plugin]:
        return list(self._plugins.values())

    def count(self) -> int:
        return len(self._plugins)

    def clear(self) -> None:
        self._plugins.clear()

    def for_context_type(self, kind: str) -> List[Plugin]:
        return [plugin for plugin in self._plugins.values() if kind in plugin.context_types]

    def default_for_context_type(self, kind: str) -> Plugin | None:
        plugins = self.for_context_type(kind)
        return plugins[0] if plugins else None

    def get_all_activity_types(self) -> List[dict[str, str]]:
        types = []
        for plugin in self._plugins.values():
            for activity_type in plugin.activity_types:
                types.append(
                    {
                        "plugin_id": plugin.id,
                        "type": activity_type.type,
                        "label": activity_type.label,
                        "icon": activity_type.icon,
                    }
                )
        return types

    def get_all_address_patterns(self) -> List[dict[str, Any]]:
        patterns = []
        for plugin in self._plugins.values():
            for pattern in plugin.address_patterns:
                patterns.append(
                    {
                        "plugin_id": plugin.id,
                        "pattern": pattern.pattern,
                        "label": pattern.label,
                        "resolver": pattern.resolver,
                    }
                )
        return patterns

    def find_address_pattern(self, plugin_ids: Iterable[str], suffix: str) -> AddressPattern | None:
        """Return the first pattern for ``suffix`` among the given plugin ids."""

        for plugin_id in plugin_ids:
            plugin = self._plugins.get(plugin_id)
            if plugin is None:
                continue
            for pattern in plugin.address_patterns:
                if pattern.suffix == suffix:
                    return pattern
        return None

    async def validate_plugin_data(
        self, plugin_id: str, data: Any, context: "Context | None" = None
    ) -> ValidationResult:
        """Schema-validate ``data`` and then run the plugin's ``validate_data`` hook.

        Never raises: an unknown plugin or a failing hook is reported as an
        invalid result so callers can surface the errors to end users.
        """

        plugin = self.get(plugin_id)
        if plugin is None:
            return ValidationResult(False, (f'Plugin "{plugin_id}" not found',))

        result = _validate_with_schema(plugin.data_schema, data)
        if not result.valid:
            return result

        hook = plugin.hooks.validate_data
        if hook is not None and context is not None:
            try:
                return await hook(data, context)
            except Exception:
                logger.exception("plugin %r validate_data hook failed", plugin_id)
                return ValidationResult(False, ("plugin validation failed",))
        return ValidationResult(True)

    def validate_member_data(self, plugin_id: str, data: Any) -> ValidationResult:
        plugin = self.get(plugin_id)
        if plugin is None:
            return ValidationResult(False, (f'Plugin "{plugin_id}" not found',))
        return _validate_with_schema(plugin.member_schema, data)

    def normalize_data(self, plugin_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply schema defaults to already-validated plugin data."""

        plugin = self.get(plugin_id)
        if plugin is None or plugin.data_schema is None:
            return dict(data)
        return plugin.data_schema.model_validate(data).model_dump(mode="json", by_alias=True, exclude_none=True)

    async def run_hook(self, plugin_ids: Iterable[str], hook_name: str, *args: Any) -> None:
        """Invoke ``hook_name`` on each enabled plugin; failures are logged and skipped."""

        for plugin_id in plugin_ids:
            plugin = self._plugins.get(plugin_id)
            if plugin is None:
                continue
            hook = getattr(plugin.hooks, hook_name, None)
            if hook is None:
                continue
            try:
                await hook(*args)
            except Exception:
                logger.exception("plugin %r hook %s failed", plugin_id, hook_name)
