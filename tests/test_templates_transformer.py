from __future__ import annotations

from playground.templates import (
    TemplateFile,
    TemplateFolder,
    count_mount_files,
    template_from_dict,
    transform_to_mount_tree,
)
from playground.templates.tree import count_files


def test_single_file_root_flattens_to_file_node() -> None:
    root = template_from_dict(
        {
            "folderName": "root",
            "items": [{"filename": "index", "fileExtension": "html", "content": "<h1>Hi</h1>"}],
        }
    )
    assert transform_to_mount_tree(root) == {"index.html": {"file": {"contents": "<h1>Hi</h1>"}}}


def test_nested_folders_become_directory_nodes() -> None:
    root = TemplateFolder(
        "project",
        (
            TemplateFile("package", "json", "{}"),
            TemplateFolder(
                "src",
                (
                    TemplateFile("main", "js", "run()"),
                    TemplateFolder("lib", (TemplateFile("util", "js", "u"),)),
                ),
            ),
        ),
    )

    assert transform_to_mount_tree(root) == {
        "package.json": {"file": {"contents": "{}"}},
        "src": {
            "directory": {
                "main.js": {"file": {"contents": "run()"}},
                "lib": {"directory": {"util.js": {"file": {"contents": "u"}}}},
            }
        },
    }


def test_extensionless_file_keeps_bare_name() -> None:
    root = TemplateFolder("root", (TemplateFile("Dockerfile", "", "FROM node"),))
    assert transform_to_mount_tree(root) == {"Dockerfile": {"file": {"contents": "FROM node"}}}


def test_empty_folder_maps_to_empty_directory() -> None:
    root = TemplateFolder("root", (TemplateFolder("public"),))
    assert transform_to_mount_tree(root) == {"public": {"directory": {}}}


def test_file_leaf_count_matches_template_and_is_deterministic() -> None:
    root = TemplateFolder(
        "root",
        (
            TemplateFile("a", "txt", "1"),
            TemplateFolder("d1", (TemplateFile("b", "txt", "2"), TemplateFile("c", "txt", "3"))),
            TemplateFolder("d2", (TemplateFolder("d3", (TemplateFile("e", "txt", "4"),)),)),
        ),
    )

    first = transform_to_mount_tree(root)
    second = transform_to_mount_tree(root)

    assert first == second
    assert count_mount_files(first) == count_files(root) == 4
