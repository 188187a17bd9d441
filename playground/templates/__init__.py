from playground.templates.transformer import (
    MountTree,
    count_mount_files,
    transform_to_mount_tree,
)
from playground.templates.tree import (
    TemplateFile,
    TemplateFolder,
    read_template_json,
    scan_template_directory,
    template_from_dict,
)

__all__ = [
    "MountTree",
    "TemplateFile",
    "TemplateFolder",
    "count_mount_files",
    "read_template_json",
    "scan_template_directory",
    "template_from_dict",
    "transform_to_mount_tree",
]
