"""Loading app concepts (markdown + frontmatter, or YAML) and layout manifests (JSON)."""

import json
from pathlib import Path

import frontmatter
import yaml

from src.codec import concept_from_dict, layout_from_dict
from src.models import AppConcept, LayoutManifest, UINode


def load_concept(file_path: Path) -> AppConcept:
    """Parse a concept file.

    Markdown files carry the concept fields in YAML frontmatter; the body, when
    present, becomes the description unless one is given. ``.yaml``/``.yml``
    files are the concept mapping itself. A missing name falls back to the
    file stem.

    Raises:
        ValueError: If the file does not describe a concept.
    """
    if file_path.suffix.lower() in (".yaml", ".yml"):
        with file_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        if not isinstance(data, dict):
            raise ValueError(f"{file_path.name}: expected a mapping at the top level")
    else:
        post = frontmatter.load(str(file_path))
        data = dict(post.metadata)
        body = post.content.strip()
        if body and not data.get("description"):
            data["description"] = body

    data.setdefault("name", file_path.stem)
    try:
        return concept_from_dict(data)
    except (KeyError, TypeError) as exc:
        raise ValueError(f"{file_path.name}: invalid concept ({exc})") from exc


def load_layout(file_path: Path | None) -> LayoutManifest:
    """Parse a layout manifest JSON file; no file gives an empty single-container layout."""
    if file_path is None:
        return LayoutManifest(root=UINode(id="root", type="container", semantic_tag="app-root"))
    with file_path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    try:
        return layout_from_dict(data)
    except (KeyError, TypeError, AttributeError) as exc:
        raise ValueError(f"{file_path.name}: invalid layout manifest ({exc})") from exc
