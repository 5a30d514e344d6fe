"""agora: context membership, permissions and activity addressing."""

from .addressing import AddressResolver, parse_address
from .app import create_app
from .config import AgoraConfig, load_config_from_env
from .errors import AgoraError, BadRequest, Conflict, Forbidden, InvalidPluginData, NotFound, Unauthorized
from .permissions import PermissionResolver, PermissionService
from .plugins import Plugin, PluginRegistry
from .roles import Role
from .server import main

__all__ = [
    "AddressResolver",
    "AgoraConfig",
    "AgoraError",
    "BadRequest",
    "Conflict",
    "Forbidden",
    "InvalidPluginData",
    "NotFound",
    "PermissionResolver",
    "PermissionService",
    "Plugin",
    "PluginRegistry",
    "Role",
    "Unauthorized",
    "create_app",
    "load_config_from_env",
    "main",
    "parse_address",
]
