from __future__ import annotations

import ast
from pathlib import Path


def _imported_names(path: Path) -> list[str]:
    tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    names: list[str] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            names.extend(alias.name for alias in node.names)
        elif isinstance(node, ast.ImportFrom):
            names.append(node.module or "")
    return names


def test_control_plane_does_not_import_the_cli_layer() -> None:
    forbidden = ("typer", "click", "flowwatch.cli")
    paths = list(Path("flowwatch/control_plane").rglob("*.py"))
    assert paths
    for path in paths:
        for name in _imported_names(path):
            assert not name.startswith(forbidden), f"{path} imports CLI dependency: {name}"


def test_shared_helpers_do_not_depend_on_services() -> None:
    for path in Path("flowwatch/shared").rglob("*.py"):
        for name in _imported_names(path):
            assert name == "flowwatch.control_plane.errors" or not name.startswith(
                "flowwatch.control_plane"
            ), f"{path} imports service module: {name}"
