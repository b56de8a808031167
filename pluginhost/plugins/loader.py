# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Plugin discovery, manifest validation, and loading."""

import importlib
import importlib.util
import json
import logging
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pluginhost.config import settings
from pluginhost.plugins.base import (
    BasePlugin,
    Permission,
    PluginManifest,
    PluginPricing,
)
from pluginhost.plugins.errors import PluginLoadError, PluginValidationError
from pluginhost.plugins.permissions import PermissionChecker

logger = logging.getLogger(__name__)

PLUGIN_MANIFEST_FILE = "plugin.manifest.json"

PLUGIN_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")
CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")

CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
}


@dataclass
class ManifestValidationResult:
    """Outcome of validating a raw manifest."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _version_parts(version: str) -> list[int]:
    # "1.2.3-beta+build" compares as 1.2.3
    core = re.split(r"[-+]", version.strip(), maxsplit=1)[0]
    if not core:
        raise ValueError(f"Invalid version: {version!r}")
    return [int(part) for part in core.split(".")]


def compare_versions(a: str, b: str) -> int:
    """Compare dotted numeric versions.

    Missing components count as zero, so ``1.2`` equals ``1.2.0``.

    Returns:
        -1, 0 or 1 as ``a`` is lower than, equal to, or higher than ``b``

    Raises:
        ValueError: If either version is not dotted numeric
    """
    a_parts = _version_parts(a)
    b_parts = _version_parts(b)
    for i in range(max(len(a_parts), len(b_parts))):
        a_part = a_parts[i] if i < len(a_parts) else 0
        b_part = b_parts[i] if i < len(b_parts) else 0
        if a_part > b_part:
            return 1
        if a_part < b_part:
            return -1
    return 0


def is_valid_version(version: Any) -> bool:
    if not isinstance(version, str):
        return False
    try:
        _version_parts(version)
    except ValueError:
        return False
    return True


def is_host_compatible(manifest: PluginManifest, host_version: str | None = None) -> bool:
    """Check the manifest's host version bounds against the running host."""
    host_version = host_version or settings.host_version
    if manifest.min_host_version and compare_versions(host_version, manifest.min_host_version) < 0:
        return False
    if manifest.max_host_version and compare_versions(host_version, manifest.max_host_version) > 0:
        return False
    return True


def format_price(price: int | PluginPricing, currency: str = "USD") -> str:
    """Format a price in cents for display.

    Whole amounts drop the cents (``$5``), others keep two decimals
    (``$4.99``). A zero price is ``"Free"``.
    """
    if isinstance(price, PluginPricing):
        currency = price.currency
        price = price.price
    if price == 0:
        return "Free"
    amount = price / 100
    formatted = f"{amount:,.0f}" if price % 100 == 0 else f"{amount:,.2f}"
    symbol = CURRENCY_SYMBOLS.get(currency.upper())
    if symbol is None:
        return f"{currency.upper()} {formatted}"
    return f"{symbol}{formatted}"


def _validate_author(author: Any, result: ManifestValidationResult) -> None:
    if not author:
        result.warnings.append("Missing author information")
    elif isinstance(author, dict):
        if not author.get("name"):
            result.errors.append("Author object must include name field")
        elif not author.get("email"):
            result.warnings.append("Author object should include email for better contact")
    elif not isinstance(author, str):
        result.errors.append("Author must be a string or an object")


def _validate_permissions(permissions: Any, result: ManifestValidationResult) -> None:
    if not isinstance(permissions, list):
        result.errors.append("Permissions must be an array")
        return
    for index, perm in enumerate(permissions):
        if isinstance(perm, str):
            name = perm
        elif isinstance(perm, dict):
            if not perm.get("type") or not perm.get("description"):
                result.errors.append(f"Permission at index {index} missing required fields")
                continue
            name = perm["type"]
        else:
            result.errors.append(f"Permission at index {index} must be a string or an object")
            continue
        if not PermissionChecker().is_permission_valid(name):
            result.warnings.append(f"Unknown permission: {name}")


def _validate_pricing(
    pricing: Any, features: set[str], result: ManifestValidationResult
) -> None:
    if not isinstance(pricing, dict):
        result.errors.append("Pricing must be an object")
        return
    price = pricing.get("price", 0)
    if isinstance(price, bool) or not isinstance(price, int) or price < 0:
        result.errors.append("Pricing price must be a non-negative integer number of cents")
    currency = pricing.get("currency", "USD")
    if not isinstance(currency, str) or not CURRENCY_PATTERN.match(currency):
        result.errors.append(f"Invalid pricing currency: {currency!r}")
    gated = pricing.get("gated_features", [])
    if not isinstance(gated, list) or not all(isinstance(f, str) for f in gated):
        result.errors.append("Pricing gated_features must be a list of strings")
        return
    for feature in gated:
        if feature not in features:
            result.errors.append(f"Gated feature '{feature}' is not a declared feature")
    if isinstance(price, int) and price > 0 and not gated:
        result.warnings.append(
            "Paid plugin declares no gated features; any valid license enables it"
        )


def validate_manifest(data: Any) -> ManifestValidationResult:
    """Validate a raw manifest mapping.

    Args:
        data: Decoded ``plugin.manifest.json`` content

    Returns:
        Result with every error and warning found
    """
    result = ManifestValidationResult(valid=False)
    if not isinstance(data, dict):
        result.errors.append("Manifest must be a JSON object")
        return result

    for name in ("id", "name", "version", "description", "entry_point"):
        if not data.get(name):
            result.errors.append(f"Missing plugin {name.replace('_', ' ')}")

    plugin_id = data.get("id")
    if plugin_id and (not isinstance(plugin_id, str) or not PLUGIN_ID_PATTERN.match(plugin_id)):
        result.errors.append(
            f"Invalid plugin ID: {plugin_id}. "
            "Use only alphanumeric characters, hyphens, and underscores."
        )

    version = data.get("version")
    if version and not is_valid_version(version):
        result.errors.append(f"Invalid plugin version: {version}")

    _validate_author(data.get("author"), result)
    _validate_permissions(data.get("permissions", []), result)

    features = data.get("features", [])
    if not isinstance(features, list) or not all(isinstance(f, str) for f in features):
        result.errors.append("Features must be a list of strings")
        features = []

    if data.get("pricing") is not None:
        _validate_pricing(data["pricing"], set(features), result)

    min_host = data.get("min_host_version")
    max_host = data.get("max_host_version")
    for label, value in (("min_host_version", min_host), ("max_host_version", max_host)):
        if value is not None and not is_valid_version(value):
            result.errors.append(f"Invalid {label}: {value}")
    if is_valid_version(min_host) and is_valid_version(max_host):
        if compare_versions(min_host, max_host) > 0:
            result.errors.append("min_host_version is higher than max_host_version")

    if not isinstance(data.get("default_config", {}), dict):
        result.errors.append("default_config must be an object")

    permissions, _ = PermissionChecker().parse_permissions(_permission_names(data))
    dangerous = PermissionChecker().get_dangerous_permissions(permissions)
    if dangerous:
        result.warnings.append(
            "Plugin requests dangerous permissions: "
            + ", ".join(sorted(p.value for p in dangerous))
        )

    result.valid = not result.errors
    return result


def _permission_names(data: dict[str, Any]) -> list[str]:
    names: list[str] = []
    permissions = data.get("permissions", [])
    if not isinstance(permissions, list):
        return names
    for perm in permissions:
        if isinstance(perm, str):
            names.append(perm)
        elif isinstance(perm, dict) and isinstance(perm.get("type"), str):
            names.append(perm["type"])
    return names


def manifest_from_dict(data: Any) -> PluginManifest:
    """Build a PluginManifest from raw manifest data.

    Raises:
        PluginValidationError: If the manifest has validation errors
    """
    result = validate_manifest(data)
    if not result.valid:
        raise PluginValidationError("; ".join(result.errors))
    for warning in result.warnings:
        logger.warning(f"Plugin {data['id']}: {warning}")

    permissions: set[Permission]
    permissions, _ = PermissionChecker().parse_permissions(_permission_names(data))

    pricing = None
    if data.get("pricing") is not None:
        raw = data["pricing"]
        pricing = PluginPricing(
            price=raw.get("price", 0),
            currency=raw.get("currency", "USD"),
            gated_features=frozenset(raw.get("gated_features", [])),
        )

    author = data.get("author", "")
    if isinstance(author, dict):
        author = author["name"]

    return PluginManifest(
        id=data["id"],
        name=data["name"],
        version=data["version"],
        entry_point=data["entry_point"],
        description=data["description"],
        author=author or "",
        homepage=data.get("homepage", ""),
        license=data.get("license", ""),
        category=data.get("category", "other"),
        min_host_version=data.get("min_host_version") or "0.1.0",
        max_host_version=data.get("max_host_version"),
        permissions=frozenset(permissions),
        features=frozenset(data.get("features", [])),
        pricing=pricing,
        default_config=dict(data.get("default_config", {})),
    )


def parse_manifest(manifest_path: Path) -> PluginManifest:
    """Parse and validate a plugin manifest file.

    Args:
        manifest_path: Path to the manifest JSON file

    Returns:
        Parsed PluginManifest dataclass

    Raises:
        PluginValidationError: If manifest is invalid
    """
    try:
        with open(manifest_path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise PluginValidationError(f"Invalid JSON in manifest: {e}") from e
    except OSError as e:
        raise PluginValidationError(f"Could not read manifest: {e}") from e

    return manifest_from_dict(data)


def _split_entry_point(entry_point: str) -> tuple[str, str | None]:
    target, _, attr = entry_point.partition(":")
    return target.strip(), attr.strip() or None


def _is_file_entry_point(target: str) -> bool:
    return target.endswith(".py") or "/" in target


def _find_plugin_class(module: Any, origin: str) -> type:
    for attr_name in dir(module):
        attr = getattr(module, attr_name)
        if (
            isinstance(attr, type)
            and issubclass(attr, BasePlugin)
            and attr is not BasePlugin
            and attr.__module__ == module.__name__
        ):
            return attr
    raise PluginLoadError(
        f"No BasePlugin subclass found in {origin}. "
        "Name the plugin class in the entry point or extend BasePlugin."
    )


def _import_file(module_name: str, module_path: Path) -> Any:
    spec = importlib.util.spec_from_file_location(module_name, module_path)
    if spec is None or spec.loader is None:
        raise PluginLoadError(f"Could not load plugin spec: {module_path}")

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        sys.modules.pop(module_name, None)
        raise PluginLoadError(f"Error executing plugin module: {e}") from e
    return module


def load_plugin_class(manifest: PluginManifest, plugin_path: Path | None = None) -> type:
    """Resolve the manifest's entry point to a plugin class.

    Entry points are either a file relative to the plugin directory
    (``backend/plugin.py`` or ``backend/plugin.py:MyPlugin``) or an
    importable module (``my_package.plugin:MyPlugin``). Without a class
    name, the module's BasePlugin subclass is used.

    Raises:
        PluginLoadError: If the entry point cannot be resolved
    """
    target, class_name = _split_entry_point(manifest.entry_point)

    if _is_file_entry_point(target):
        if plugin_path is None:
            raise PluginLoadError(
                f"Plugin {manifest.id} has a file entry point but no plugin directory"
            )
        module_path = (plugin_path / target).resolve()
        if not module_path.is_relative_to(plugin_path.resolve()):
            raise PluginLoadError(f"Entry point escapes plugin directory: {target}")
        if not module_path.is_file():
            raise PluginLoadError(f"Plugin module not found: {module_path}")
        module_name = f"pluginhost_plugins.{manifest.id.replace('-', '_')}.{module_path.stem}"
        module = _import_file(module_name, module_path)
        origin = str(module_path)
    else:
        try:
            module = importlib.import_module(target)
        except Exception as e:
            raise PluginLoadError(f"Could not import plugin module {target}: {e}") from e
        origin = target

    if class_name is None:
        return _find_plugin_class(module, origin)

    plugin_class = getattr(module, class_name, None)
    if not isinstance(plugin_class, type):
        raise PluginLoadError(f"Plugin class {class_name} not found in {origin}")
    return plugin_class


def load_plugin(manifest: PluginManifest, plugin_path: Path | None = None) -> Any:
    """Load and instantiate the plugin object for a manifest.

    Raises:
        PluginLoadError: If the class cannot be resolved or instantiated
    """
    plugin_class = load_plugin_class(manifest, plugin_path)
    try:
        return plugin_class()
    except Exception as e:
        raise PluginLoadError(f"Could not instantiate {plugin_class.__name__}: {e}") from e


def is_entry_point_resolvable(manifest: PluginManifest, plugin_path: Path | None = None) -> bool:
    """Whether ``load_plugin_class`` would succeed for this manifest."""
    try:
        load_plugin_class(manifest, plugin_path)
    except PluginLoadError as e:
        logger.warning(
            f"Entry point of plugin {manifest.id} v{manifest.version} not resolvable: {e}"
        )
        return False
    return True


class PluginLoader:
    """Handles plugin discovery and loading from a plugins directory."""

    def __init__(self, plugins_dir: Path | None = None) -> None:
        """Initialize the plugin loader.

        Args:
            plugins_dir: Directory containing plugins. Defaults to settings
        """
        self.plugins_dir = plugins_dir or settings.plugins_dir

    def discover_plugins(self) -> list[tuple[Path, PluginManifest]]:
        """Discover all plugins in the plugins directory.

        Returns:
            List of tuples (plugin_path, manifest) for each valid plugin
        """
        discovered: list[tuple[Path, PluginManifest]] = []
        logger.debug(f"Discovering plugins in {self.plugins_dir}")

        if not self.plugins_dir.exists():
            return discovered

        for entry in sorted(self.plugins_dir.iterdir()):
            if not entry.is_dir():
                continue

            # Skip hidden directories and __pycache__
            if entry.name.startswith(".") or entry.name == "__pycache__":
                continue

            manifest_path = entry / PLUGIN_MANIFEST_FILE
            if not manifest_path.exists():
                logger.warning(f"No manifest found in {entry}")
                continue

            try:
                manifest = parse_manifest(manifest_path)
                discovered.append((entry, manifest))
                logger.debug(f"Discovered plugin: {manifest.id} v{manifest.version}")
            except PluginValidationError as e:
                logger.error(f"Invalid manifest in {entry}: {e}")

        return discovered

    def get_plugin_path(self, plugin_id: str) -> Path | None:
        """Get the path to a plugin's directory, or None if not found."""
        plugin_path = self.plugins_dir / plugin_id
        if plugin_path.exists() and plugin_path.is_dir():
            return plugin_path
        return None

    def load_plugin(self, manifest: PluginManifest, plugin_path: Path | None = None) -> Any:
        """Load and instantiate a plugin from this loader's directory."""
        return load_plugin(manifest, plugin_path or self.get_plugin_path(manifest.id))
