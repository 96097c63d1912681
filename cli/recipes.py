from __future__ import annotations

import json
import posixpath
from dataclasses import dataclass, replace
from typing import Any

from dataclasses_json import DataClassJsonMixin

from constants import DEFAULT_REMOTE_REF, DEFAULT_SRC_DIR, PARSER_FILENAME
from dependency_graph import check_acyclic
from errors import ConfigError
from revision_resolver import ResolvedRevision
from tsm_types import LanguageId, RepoLocator

AUTO_REVISION = "auto"


@dataclass(frozen=True)
class Recipe(DataClassJsonMixin):
    """How to obtain and build one grammar.

    `revision` None means "search for the newest ABI-compatible commit";
    anything else is a fixed revision (commit, tag or branch name).
    """

    language_id: LanguageId
    url: RepoLocator
    revision: str | None = None
    subpath: str | None = None
    ref: str = DEFAULT_REMOTE_REF
    src_dir: str = DEFAULT_SRC_DIR
    dependencies: tuple[LanguageId, ...] = ()

    @property
    def is_auto(self) -> bool:
        return self.revision is None

    @property
    def source_dir(self) -> str:
        """Repository-relative directory holding parser.c and friends."""
        return posixpath.join(self.subpath or "", self.src_dir)

    @property
    def parser_path(self) -> str:
        return posixpath.join(self.source_dir, PARSER_FILENAME)


def pin(recipe: Recipe, resolved: ResolvedRevision) -> Recipe:
    """A fixed-revision copy of `recipe`, for reproducible installs without searching."""
    assert recipe.language_id == resolved.language_id
    return replace(recipe, revision=resolved.commit)


def _expect(lang: LanguageId, key: str, value: Any, ty: type) -> Any:
    if not isinstance(value, ty):
        raise ConfigError(
            f"grammar {lang!r}: `{key}` should be a {ty.__name__}, got {value!r}", lang
        )
    return value


def recipe_from_table(lang: LanguageId, table: dict[str, Any]) -> Recipe:
    """Build a Recipe from one already-parsed `[grammars.<lang>]` table."""
    known = {"url", "revision", "subpath", "ref", "src_dir", "dependencies"}
    unknown = set(table) - known
    if unknown:
        raise ConfigError(f"grammar {lang!r}: unknown keys {sorted(unknown)}", lang)
    if "url" not in table:
        raise ConfigError(f"grammar {lang!r}: missing `url`", lang)

    revision = table.get("revision")
    if revision is not None:
        _expect(lang, "revision", revision, str)
        if revision == AUTO_REVISION:
            revision = None

    subpath = table.get("subpath")
    if subpath is not None:
        _expect(lang, "subpath", subpath, str)

    deps = _expect(lang, "dependencies", table.get("dependencies", []), list)
    for dep in deps:
        _expect(lang, "dependencies", dep, str)

    return Recipe(
        language_id=lang,
        url=_expect(lang, "url", table["url"], str),
        revision=revision,
        subpath=subpath,
        ref=_expect(lang, "ref", table.get("ref", DEFAULT_REMOTE_REF), str),
        src_dir=_expect(lang, "src_dir", table.get("src_dir", DEFAULT_SRC_DIR), str),
        dependencies=tuple(deps),
    )


def recipes_from_tables(tables: dict[str, Any]) -> dict[LanguageId, Recipe]:
    recipes = {}
    for lang, table in tables.items():
        _expect(lang, "grammars." + lang, table, dict)
        recipes[lang] = recipe_from_table(lang, table)

    # Dependencies without a recipe of their own surface later, as UnknownLanguage.
    check_acyclic(recipes, lambda lang: recipes[lang].dependencies if lang in recipes else ())
    return recipes


def recipe_to_table(recipe: Recipe) -> dict[str, Any]:
    d = recipe.to_dict()
    del d["language_id"]
    return {k: v for k, v in d.items() if v is not None}


def export_pinned(pinned: list[Recipe]) -> str:
    """Render recipes as a JSON config document accepted by `config.load_settings()`."""
    ordered = sorted(pinned, key=lambda r: r.language_id)
    grammars = {r.language_id: recipe_to_table(r) for r in ordered}
    return json.dumps({"grammars": grammars}, indent=2)
