from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union

from playground.errors import TemplateStructureError

logger = logging.getLogger(__name__)

# Directories never worth shipping into a sandbox.
SKIP_DIRS = frozenset({"node_modules", ".git", ".next", "dist", "build"})


@dataclass(frozen=True)
class TemplateFile:
    filename: str
    file_extension: str
    content: str

    @property
    def name(self) -> str:
        if not self.file_extension:
            return self.filename
        return f"{self.filename}.{self.file_extension}"


@dataclass(frozen=True)
class TemplateFolder:
    folder_name: str
    items: tuple[TemplateItem, ...] = ()


TemplateItem = Union[TemplateFile, TemplateFolder]


def split_filename(name: str) -> tuple[str, str]:
    """Split on the last dot: 'index.html' -> ('index', 'html').

    Dotfiles keep their name ('.env' -> ('.env', '')), matching how the
    template scanner derives extensions.
    """
    stem, ext = os.path.splitext(name)
    return stem, ext[1:]


def template_from_dict(data: Any) -> TemplateFolder:
    """Parse the stored JSON shape into an immutable tree."""
    if not isinstance(data, dict):
        raise TemplateStructureError("Invalid template structure: expected an object")
    item = _item_from_dict(data, where="")
    if not isinstance(item, TemplateFolder):
        raise TemplateStructureError("Invalid template structure: root must be a folder")
    return item


def _item_from_dict(data: Any, *, where: str) -> TemplateItem:
    if not isinstance(data, dict):
        raise TemplateStructureError(f"Invalid template item at '{where or '/'}'")

    if "folderName" in data:
        name = data.get("folderName")
        items = data.get("items")
        if not isinstance(name, str) or not name:
            raise TemplateStructureError(f"Folder without a name at '{where or '/'}'")
        if not isinstance(items, list):
            raise TemplateStructureError(f"Folder '{name}' has no items list")
        child_where = f"{where}/{name}" if where else name
        return TemplateFolder(
            folder_name=name,
            items=tuple(_item_from_dict(i, where=child_where) for i in items),
        )

    filename = data.get("filename")
    if not isinstance(filename, str) or not filename:
        raise TemplateStructureError(f"File without a filename under '{where or '/'}'")
    ext = data.get("fileExtension") or ""
    content = data.get("content")
    if not isinstance(ext, str):
        raise TemplateStructureError(f"File '{filename}' has an invalid extension")
    if content is None:
        content = ""
    if not isinstance(content, str):
        raise TemplateStructureError(f"File '{filename}' has non-text content")
    return TemplateFile(filename=filename, file_extension=ext, content=content)


def template_to_dict(item: TemplateItem) -> dict[str, Any]:
    if isinstance(item, TemplateFolder):
        return {
            "folderName": item.folder_name,
            "items": [template_to_dict(i) for i in item.items],
        }
    return {
        "filename": item.filename,
        "fileExtension": item.file_extension,
        "content": item.content,
    }


def read_template_json(path: str | os.PathLike[str]) -> TemplateFolder:
    try:
        raw = Path(path).read_text(encoding="utf-8")
        return template_from_dict(json.loads(raw))
    except TemplateStructureError as exc:
        raise TemplateStructureError(f"Failed to read template from {path}: {exc}") from exc
    except (OSError, ValueError) as exc:
        raise TemplateStructureError(f"Failed to read template from {path}: {exc}") from exc


def scan_template_directory(path: str | os.PathLike[str]) -> TemplateFolder:
    root = Path(path)
    if not root.is_dir():
        raise TemplateStructureError(f"Template path must be a directory: {path}")
    return TemplateFolder(folder_name=root.name, items=tuple(_scan_dir(root)))


def _scan_dir(dir_path: Path) -> list[TemplateItem]:
    items: list[TemplateItem] = []
    for entry in sorted(dir_path.iterdir(), key=lambda p: p.name):
        if entry.is_dir():
            if entry.name in SKIP_DIRS:
                continue
            items.append(
                TemplateFolder(folder_name=entry.name, items=tuple(_scan_dir(entry)))
            )
        elif entry.is_file():
            try:
                content = entry.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                # Binary or unreadable files are not representable as template text.
                logger.warning("Skipping unreadable template file %s", entry)
                continue
            stem, ext = split_filename(entry.name)
            items.append(TemplateFile(filename=stem, file_extension=ext, content=content))
    return items


def save_template_json(
    template_dir: str | os.PathLike[str], output_path: str | os.PathLike[str]
) -> TemplateFolder:
    tree = scan_template_directory(template_dir)
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(template_to_dict(tree), indent=2), encoding="utf-8")
    logger.info("Template structure saved to %s", out)
    return tree


def iter_files(
    folder: TemplateFolder, prefix: str = ""
) -> Iterator[tuple[str, TemplateFile]]:
    """Yield (relative path, file) pairs; the root folder name is not part of the path."""
    for item in folder.items:
        if isinstance(item, TemplateFolder):
            sub = f"{prefix}/{item.folder_name}" if prefix else item.folder_name
            yield from iter_files(item, sub)
        else:
            yield (f"{prefix}/{item.name}" if prefix else item.name), item


def find_file_path(file: TemplateFile, root: TemplateFolder) -> str | None:
    for path, candidate in iter_files(root):
        if (
            candidate.filename == file.filename
            and candidate.file_extension == file.file_extension
        ):
            return path
    return None


def count_files(folder: TemplateFolder) -> int:
    return sum(1 for _ in iter_files(folder))


def with_file(root: TemplateFolder, path: str, content: str) -> TemplateFolder:
    """Return a copy of `root` with the file at `path` replaced or added.

    `path` is slash-separated and relative to the root. Missing folders are
    created; untouched subtrees are shared with the original tree.
    """
    parts = [p for p in path.split("/") if p]
    if not parts:
        raise ValueError("empty path")
    return _with_file(root, parts, content)


def _with_file(folder: TemplateFolder, parts: list[str], content: str) -> TemplateFolder:
    head, rest = parts[0], parts[1:]
    items = list(folder.items)
    if not rest:
        stem, ext = split_filename(head)
        new_file = TemplateFile(filename=stem, file_extension=ext, content=content)
        for idx, item in enumerate(items):
            if isinstance(item, TemplateFile) and item.name == head:
                items[idx] = new_file
                break
        else:
            items.append(new_file)
        return TemplateFolder(folder_name=folder.folder_name, items=tuple(items))

    for idx, item in enumerate(items):
        if isinstance(item, TemplateFolder) and item.folder_name == head:
            items[idx] = _with_file(item, rest, content)
            break
    else:
        items.append(_with_file(TemplateFolder(folder_name=head), rest, content))
    return TemplateFolder(folder_name=folder.folder_name, items=tuple(items))
