"""Schema versioning and migration for whole-file documents (stats.json, baseline)."""

from __future__ import annotations

from typing import Any, Callable, Dict, List

from packaging import version

# Current schema version
CURRENT_VERSION = "1.1"

# Minimum supported version for loading
MIN_SUPPORTED_VERSION = "1.0"

SCHEMA_KEY = "schema"

# Version history
VERSION_HISTORY = {
    "1.0": "Initial hook-script format, error_rate stored as a percentage string",
    "1.1": "error_rate stored as a fraction, consumed delta batches tracked",
}


class SchemaVersionError(Exception):
    """Raised when a document's schema version is incompatible."""

    def __init__(
        self, found_version: str, required_version: str, message: str = ""
    ):
        self.found_version = found_version
        self.required_version = required_version
        super().__init__(
            message
            or f"Schema version {found_version} is incompatible. Required: >={required_version}"
        )


class SchemaMigrator:
    """Handles migration between schema versions."""

    _migrations: Dict[str, Callable[[Dict], Dict]] = {}

    @classmethod
    def register(cls, from_version: str, to_version: str):
        """Decorator to register a migration function."""

        def decorator(func: Callable[[Dict], Dict]):
            cls._migrations[f"{from_version}->{to_version}"] = func
            return func

        return decorator

    @classmethod
    def migrate(
        cls, data: Dict[str, Any], target_version: str = CURRENT_VERSION
    ) -> Dict[str, Any]:
        """Migrate a document from its current version to target version.

        Documents without a schema key predate versioning and are treated as 1.0.
        """
        current = str(data.get(SCHEMA_KEY, "1.0"))

        if version.parse(current) >= version.parse(target_version):
            return data

        result = data.copy()
        for from_v, to_v in cls._get_migration_path(current, target_version):
            key = f"{from_v}->{to_v}"
            if key in cls._migrations:
                result = cls._migrations[key](result)
            result[SCHEMA_KEY] = to_v

        return result

    @classmethod
    def _get_migration_path(
        cls, from_version: str, to_version: str
    ) -> List[tuple]:
        """Get ordered list of migrations needed."""
        versions = sorted(VERSION_HISTORY.keys(), key=lambda v: version.parse(v))
        path = []

        in_range = False
        for i, v in enumerate(versions):
            if v == from_version:
                in_range = True
            if in_range and i + 1 < len(versions):
                next_v = versions[i + 1]
                if version.parse(next_v) <= version.parse(to_version):
                    path.append((v, next_v))
            if v == to_version:
                break

        return path

    @classmethod
    def get_registered_migrations(cls) -> List[str]:
        """Get list of registered migration keys."""
        return list(cls._migrations.keys())


def validate_version(data: Dict[str, Any]) -> None:
    """Validate that a document's schema version is supported.

    Raises:
        SchemaVersionError: If the version is below MIN_SUPPORTED_VERSION or unparseable.
    """
    found = str(data.get(SCHEMA_KEY, "1.0"))

    try:
        parsed = version.parse(found)
    except version.InvalidVersion:
        raise SchemaVersionError(found, MIN_SUPPORTED_VERSION, f"Unparseable schema version: {found!r}")

    if parsed < version.parse(MIN_SUPPORTED_VERSION):
        raise SchemaVersionError(
            found,
            MIN_SUPPORTED_VERSION,
            f"Schema version {found} is too old. Minimum supported: {MIN_SUPPORTED_VERSION}",
        )


def upgrade(data: Dict[str, Any]) -> Dict[str, Any]:
    """Validate then migrate a loaded document to CURRENT_VERSION."""
    validate_version(data)
    return SchemaMigrator.migrate(data)


def get_version_info() -> Dict[str, Any]:
    """Get information about schema versions."""
    return {
        "current": CURRENT_VERSION,
        "minimum_supported": MIN_SUPPORTED_VERSION,
        "history": VERSION_HISTORY,
    }


@SchemaMigrator.register("1.0", "1.1")
def _migrate_1_0_to_1_1(data: Dict) -> Dict:
    """Convert error_rate from a percentage string ("12.5") to a fraction (0.125)."""
    result = data.copy()
    rate = result.get("error_rate")
    if isinstance(rate, str):
        try:
            result["error_rate"] = round(float(rate) / 100.0, 6)
        except ValueError:
            result["error_rate"] = 0.0
    result.setdefault("consumed_batches", [])
    return result
