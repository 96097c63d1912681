"""Settings, gathered from (highest precedence first) command-line options,
TREESMITH_* environment variables, the config file, and built-in defaults.

The config file is TOML, or JSON if its name ends in `.json` (which is what
`treesmith export` writes). Example:

    [settings]
    abi_ceiling = 14
    registration_dir = "~/.emacs.d/tree-sitter"

    [search]
    initial_depth = 10
    depth_step = 10
    max_attempts = 10

    [substitutions.c-compiler]
    program = "zig"
    args = ["cc"]

    [grammars.typescript]
    url = "https://github.com/tree-sitter/tree-sitter-typescript"
    subpath = "typescript"

    [grammars.tsx]
    url = "https://github.com/tree-sitter/tree-sitter-typescript"
    subpath = "tsx"
    dependencies = ["typescript"]
"""

import json
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from constants import CONFIG_FILENAME, DEFAULT_PROBE_WORKERS
from errors import ConfigError
from recipes import Recipe, recipes_from_tables
from revision_resolver import SearchBounds
from toolchain import ToolSpec, canonical_tool_name
from tsm_types import LanguageId, LogicalToolName


@dataclass
class Settings:
    localdir: Path
    registration_dir: Path
    abi_ceiling: int | None = None
    search: SearchBounds = field(default_factory=SearchBounds)
    probe_workers: int = DEFAULT_PROBE_WORKERS
    substitutions: dict[LogicalToolName, ToolSpec] = field(default_factory=dict)
    recipes: dict[LanguageId, Recipe] = field(default_factory=dict)
    config_path: Path | None = None

    def require_ceiling(self) -> int:
        if self.abi_ceiling is None:
            raise ConfigError(
                "no ABI ceiling configured; pass --abi-ceiling, set TREESMITH_ABI_CEILING,"
                " or set `abi_ceiling` under [settings] in the config file"
            )
        return self.abi_ceiling


def default_localdir(env: Mapping[str, str]) -> Path:
    if env.get("TREESMITH_LOCALDIR"):
        return Path(env["TREESMITH_LOCALDIR"]).expanduser()
    xdg = env.get("XDG_DATA_HOME")
    base = Path(xdg) if xdg else Path.home() / ".local" / "share"
    return base / "treesmith"


def read_config_file(path: Path) -> dict[str, Any]:
    try:
        with open(path, "rb") as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = tomllib.load(f)
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    except (tomllib.TOMLDecodeError, json.JSONDecodeError) as e:
        raise ConfigError(f"malformed config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a table/object at top level")
    return data


def _table(data: Mapping[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"`{key}` in the config file should be a table, got {value!r}")
    return value


def _as_int(value: Any, what: str) -> int:
    # bool is an int subclass, but `abi_ceiling = true` is surely a mistake.
    if isinstance(value, bool):
        raise ConfigError(f"{what} should be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{what} should be an integer, got {value!r}") from e


def search_bounds_from_table(table: dict[str, Any]) -> SearchBounds:
    known = {"initial_depth", "depth_step", "max_attempts"}
    unknown = set(table) - known
    if unknown:
        raise ConfigError(f"[search]: unknown keys {sorted(unknown)}")
    try:
        return SearchBounds(**{k: _as_int(v, f"search.{k}") for k, v in table.items()})
    except ValueError as e:
        raise ConfigError(str(e)) from e


def substitutions_from_tables(tables: dict[str, Any]) -> dict[LogicalToolName, ToolSpec]:
    subs = {}
    for name, table in tables.items():
        if not isinstance(table, dict) or not isinstance(table.get("program"), str):
            raise ConfigError(f"substitution for {name!r} needs a `program` string")
        args = table.get("args", [])
        if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
            raise ConfigError(f"substitution for {name!r}: `args` should be a list of strings")
        logical = canonical_tool_name(name)
        subs[logical] = ToolSpec(logical, table["program"], tuple(args))
    return subs


def load_settings(
    config_path: Path | None = None,
    abi_ceiling: int | None = None,
    env: Mapping[str, str] | None = None,
) -> Settings:
    env = os.environ if env is None else env
    localdir = default_localdir(env)

    if config_path is None and env.get("TREESMITH_CONFIG"):
        config_path = Path(env["TREESMITH_CONFIG"]).expanduser()
    if config_path is None and (localdir / CONFIG_FILENAME).is_file():
        config_path = localdir / CONFIG_FILENAME

    data = read_config_file(config_path) if config_path is not None else {}

    settings_t = _table(data, "settings")
    unknown = set(settings_t) - {"abi_ceiling", "registration_dir", "probe_workers"}
    if unknown:
        raise ConfigError(f"[settings]: unknown keys {sorted(unknown)}")

    if env.get("TREESMITH_REGISTRATION_DIR"):
        registration_dir = Path(env["TREESMITH_REGISTRATION_DIR"]).expanduser()
    elif "registration_dir" in settings_t:
        registration_dir = Path(str(settings_t["registration_dir"])).expanduser()
    else:
        registration_dir = localdir / "grammars"

    ceiling = abi_ceiling
    if ceiling is None and env.get("TREESMITH_ABI_CEILING"):
        ceiling = _as_int(env["TREESMITH_ABI_CEILING"], "TREESMITH_ABI_CEILING")
    if ceiling is None and "abi_ceiling" in settings_t:
        ceiling = _as_int(settings_t["abi_ceiling"], "settings.abi_ceiling")

    probe_workers = _as_int(
        settings_t.get("probe_workers", DEFAULT_PROBE_WORKERS), "settings.probe_workers"
    )
    if probe_workers < 1:
        raise ConfigError("settings.probe_workers must be at least 1")

    return Settings(
        localdir=localdir,
        registration_dir=registration_dir,
        abi_ceiling=ceiling,
        search=search_bounds_from_table(_table(data, "search")),
        probe_workers=probe_workers,
        substitutions=substitutions_from_tables(_table(data, "substitutions")),
        recipes=recipes_from_tables(_table(data, "grammars")),
        config_path=config_path,
    )
