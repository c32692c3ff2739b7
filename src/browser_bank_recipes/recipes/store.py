"""Recipe storage and persistence using YAML files.

One file per recipe, named ``<id>.yaml``. Files are written atomically and,
because ``tempfile.mkstemp`` creates them with mode 0600, are readable only by
the owner: recipes carry sensitive input values in cleartext so replay can
reproduce them.
"""

import logging
import os
import re
import tempfile
from datetime import UTC, datetime
from functools import partial
from pathlib import Path
from typing import Any

import yaml
from anyio import to_thread
from pydantic import ValidationError

from ..exceptions import EmptyRecordingError, RecipeNotFoundError
from .models import Recipe

logger = logging.getLogger(__name__)

_RECIPE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "target_url",
        "institution",
        "linked_account_id",
        "steps",
        "last_run_at",
        "last_extraction_method",
    }
)


def _atomic_write_text(path: Path, content: str) -> None:
    """Atomically write text to `path` using temp + fsync + os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.tmp.", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            tmp_path.unlink(missing_ok=True)
        except OSError:
            pass
        raise


def _dump_yaml(recipe: Recipe) -> str:
    content = yaml.safe_dump(recipe.to_dict(), default_flow_style=False, sort_keys=False, allow_unicode=True)
    if not content.endswith("\n"):
        content += "\n"
    return content


def get_default_recipes_dir() -> Path:
    """Get the default recipes directory."""
    if os.name == "nt":
        base = Path(os.environ.get("APPDATA", Path.home() / ".config")).expanduser()
    else:
        base = Path("~/.config").expanduser()

    return base / "bank-recipes"


class RecipeStore:
    """Manages recipe storage in YAML files."""

    def __init__(self, directory: str | None = None):
        """Initialize recipe store.

        Args:
            directory: Path to recipes directory. If None, uses default.
        """
        if directory:
            self.directory = Path(directory).expanduser()
        else:
            self.directory = get_default_recipes_dir()

        self.directory.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Recipes directory: {self.directory}")

    def _recipe_path(self, recipe_id: str) -> Path | None:
        if not _RECIPE_ID_RE.match(recipe_id or ""):
            return None
        return self.directory / f"{recipe_id}.yaml"

    def _write(self, recipe: Recipe) -> Path:
        path = self._recipe_path(recipe.id)
        if path is None:
            raise ValueError(f"Invalid recipe id: {recipe.id!r}")
        _atomic_write_text(path, _dump_yaml(recipe))
        return path

    def _read(self, path: Path) -> Recipe | None:
        try:
            with path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f)

            if not data:
                logger.warning(f"Empty recipe file: {path}")
                return None

            return Recipe.from_dict(data)

        except yaml.YAMLError as e:
            logger.error(f"Invalid YAML in recipe file {path}: {e}")
            return None
        except ValidationError as e:
            logger.error(f"Invalid recipe definition in {path}: {e}")
            return None

    def list_all(self) -> list[Recipe]:
        """List all stored recipes, oldest first."""
        recipes = []
        for path in self.directory.glob("*.yaml"):
            recipe = self._read(path)
            if recipe is not None:
                recipes.append(recipe)
        return sorted(recipes, key=lambda r: r.created_at)

    async def list_all_async(self) -> list[Recipe]:
        """Async wrapper for list_all() to avoid blocking the event loop."""
        return await to_thread.run_sync(self.list_all)

    def get(self, recipe_id: str) -> Recipe | None:
        """Load a recipe by id.

        Args:
            recipe_id: Recipe identifier

        Returns:
            Recipe if found, None otherwise
        """
        path = self._recipe_path(recipe_id)
        if path is None or not path.exists():
            logger.debug(f"Recipe not found: {recipe_id}")
            return None
        return self._read(path)

    async def get_async(self, recipe_id: str) -> Recipe | None:
        """Async wrapper for get() to avoid blocking the event loop."""
        return await to_thread.run_sync(self.get, recipe_id)

    def create(
        self,
        name: str,
        url: str,
        institution: str | None = None,
        steps: list | None = None,
        account_id: str | None = None,
    ) -> str:
        """Persist a new recipe.

        Args:
            name: Display name
            url: Page where playback starts
            institution: Optional bank name
            steps: Ordered interaction steps (must not be empty)
            account_id: Optional linked account

        Returns:
            The new recipe id

        Raises:
            EmptyRecordingError: If steps is empty
        """
        if not steps:
            raise EmptyRecordingError("A recipe needs at least one step")

        recipe = Recipe(
            name=name,
            target_url=url,
            institution=institution,
            linked_account_id=account_id,
            steps=list(steps),
        )
        path = self._write(recipe)
        logger.info(f"Saved recipe: {recipe.name} ({recipe.id}) with {len(recipe.steps)} steps to {path}")
        return recipe.id

    async def create_async(self, name: str, url: str, **kwargs: Any) -> str:
        """Async wrapper for create() to avoid blocking the event loop."""
        return await to_thread.run_sync(partial(self.create, name, url, **kwargs))

    def update(self, recipe_id: str, **fields: Any) -> Recipe:
        """Update selected fields of a stored recipe.

        Raises:
            RecipeNotFoundError: If the recipe does not exist
            ValueError: On unknown fields or an update that leaves the recipe invalid
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")
        if "steps" in fields and not fields["steps"]:
            raise EmptyRecordingError("A recipe needs at least one step")

        recipe = self.get(recipe_id)
        if recipe is None:
            raise RecipeNotFoundError(recipe_id)

        data = recipe.model_dump()
        data.update(fields)
        data["updated_at"] = datetime.now(UTC)
        updated = Recipe.model_validate(data)
        self._write(updated)
        logger.debug(f"Updated recipe {recipe_id}: {sorted(fields)}")
        return updated

    async def update_async(self, recipe_id: str, **fields: Any) -> Recipe:
        """Async wrapper for update() to avoid blocking the event loop."""
        return await to_thread.run_sync(partial(self.update, recipe_id, **fields))

    def delete(self, recipe_id: str) -> bool:
        """Delete a recipe by id.

        Returns:
            True if deleted, False if not found
        """
        path = self._recipe_path(recipe_id)
        if path is None or not path.exists():
            return False

        path.unlink()
        logger.info(f"Deleted recipe: {recipe_id}")
        return True

    async def delete_async(self, recipe_id: str) -> bool:
        """Async wrapper for delete() to avoid blocking the event loop."""
        return await to_thread.run_sync(self.delete, recipe_id)

    def export_yaml(self, recipe_id: str) -> str:
        """Serialize a stored recipe to YAML for transfer to another machine.

        Raises:
            RecipeNotFoundError: If the recipe does not exist
        """
        recipe = self.get(recipe_id)
        if recipe is None:
            raise RecipeNotFoundError(recipe_id)
        return _dump_yaml(recipe)

    def import_yaml(self, yaml_content: str) -> Recipe:
        """Store a recipe from exported YAML under a fresh id.

        Raises:
            ValueError: If YAML is invalid or does not describe a recipe
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML: {e}") from e

        if not isinstance(data, dict):
            raise ValueError("Empty or malformed YAML content")
        if not data.get("steps"):
            raise EmptyRecordingError("Imported recipe has no steps")

        for key in ("id", "created_at", "updated_at", "last_run_at", "last_extraction_method"):
            data.pop(key, None)
        try:
            recipe = Recipe.model_validate(data)
        except ValidationError as e:
            raise ValueError(f"Invalid recipe: {e}") from e

        self._write(recipe)
        logger.info(f"Imported recipe: {recipe.name} ({recipe.id})")
        return recipe
